#!/usr/bin/env python3
"""
OpenCart Category Translator CLI

Translates OpenCart category descriptions from one language to another using
OpenAI Chat Completions via LangChain, and writes the result back to the
category_description table under the destination language id.

Key features:
- Dry-run by default: rows are read and request payloads logged, nothing is sent or written.
- Reads DB credentials from OpenCart's config.php, or from a YAML/JSON config file.
- Only non-empty fields are sent; rows with nothing to translate are skipped.
- One atomic upsert per category, so re-runs overwrite instead of duplicating.
- A failed API call or a malformed response skips that category and moves on.

Usage:
  python translate_categories.py [--no-dry-run] [--verbose] [--source-lang-id=2] [--dest-lang-id=3] [--config config.php]

Dependencies:
  - langchain-core
  - langchain-openai
  - PyYAML
  - PyMySQL

"""
from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sqlite3
import sys
import time
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pymysql
import pymysql.cursors
import yaml
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

APP_NAME = "category_translator"
DEFAULT_CONFIG_FILE = "config.php"

TRANSLATABLE_FIELDS = (
    "name",
    "description",
    "description_bottom",
    "meta_title",
    "meta_description",
    "meta_keyword",
    "meta_h1",
)

REQUIRED_DB_KEYS = {
    "mysql": ("hostname", "username", "password", "database", "port", "prefix"),
    "sqlite": ("database", "prefix"),
}


class ConfigError(RuntimeError):
    """Configuration is missing or incomplete."""


class TranslationError(RuntimeError):
    """A single category could not be translated."""


# ---------------------- Config ----------------------
@dataclass
class DatabaseConfig:
    driver: str = "mysql"  # mysql | sqlite
    hostname: str = "localhost"
    username: str = ""
    password: str = ""
    database: str = ""
    port: int = 3306
    prefix: str = ""


@dataclass
class LLMConfig:
    model: str = "gpt-4o"
    temperature: float = 0.2
    request_timeout: Optional[int] = None  # None keeps the client default


@dataclass
class TranslationConfig:
    store_type: str = "sports equipment and accessories"
    source_language: str = "Russian"
    dest_language: str = "Ukrainian"


@dataclass
class RuntimeConfig:
    config: str = DEFAULT_CONFIG_FILE
    execute: bool = False
    verbose: bool = False
    source_lang_id: int = 2
    dest_lang_id: int = 3


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    translation: TranslationConfig = field(default_factory=TranslationConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @staticmethod
    def from_files_and_args(config_path: Optional[str], args: argparse.Namespace) -> "AppConfig":
        path = Path(config_path).expanduser() if config_path else default_config_path()
        file_cfg = load_config_file(path)
        validate_database_section(file_cfg.get("database") or {})
        cfg = merge_config(AppConfig(), file_cfg)

        cfg.runtime.config = str(path)
        cfg.runtime.execute = bool(args.no_dry_run)
        cfg.runtime.verbose = bool(args.verbose)
        if args.source_lang_id is not None:
            cfg.runtime.source_lang_id = args.source_lang_id
        if args.dest_lang_id is not None:
            cfg.runtime.dest_lang_id = args.dest_lang_id
        # LLM overrides
        if args.model:
            cfg.llm.model = args.model
        if args.temperature is not None:
            cfg.llm.temperature = args.temperature
        if args.request_timeout is not None:
            cfg.llm.request_timeout = args.request_timeout
        return cfg


# ---------------------- Logging ----------------------
logger = logging.getLogger(APP_NAME)


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def setup_logging(level: int = logging.INFO) -> None:
    """
    Route INFO/DEBUG to stdout and WARNING+ to stderr.
    Existing handlers are replaced so repeated calls do not duplicate output.
    """
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", "%H:%M:%S")
    for h in list(logger.handlers):
        logger.removeHandler(h)

    out_handler = logging.StreamHandler(sys.stdout)
    out_handler.setFormatter(formatter)
    out_handler.addFilter(_BelowWarning())
    logger.addHandler(out_handler)

    err_handler = logging.StreamHandler(sys.stderr)
    err_handler.setFormatter(formatter)
    err_handler.setLevel(logging.WARNING)
    logger.addHandler(err_handler)

    logger.setLevel(level)
    logger.propagate = False


# ---------------------- Config files ----------------------
def default_config_path() -> Path:
    """config.php in the working directory, else the one next to this script."""
    cwd_path = Path.cwd() / DEFAULT_CONFIG_FILE
    if cwd_path.exists():
        return cwd_path
    return Path(__file__).resolve().parent / DEFAULT_CONFIG_FILE


_PHP_DEFINE_RE = re.compile(
    r"""define\(\s*['"](DB_[A-Z_]+)['"]\s*,\s*(?:'((?:[^'\\]|\\.)*)'|"((?:[^"\\]|\\.)*)"|(-?\d+))\s*\)""",
)

_PHP_DB_KEYS = {
    "DB_HOSTNAME": "hostname",
    "DB_USERNAME": "username",
    "DB_PASSWORD": "password",
    "DB_DATABASE": "database",
    "DB_PORT": "port",
    "DB_PREFIX": "prefix",
}

_PHP_DQ_ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "e": "\x1b",
    "f": "\f",
    "\\": "\\",
    "$": "$",
    '"': '"',
}


def parse_opencart_config(text: str) -> Dict[str, Any]:
    """
    Extract the DB_* constants from an OpenCart config.php.

    Only literal define() calls are understood; anything computed at runtime is ignored.
    """
    db: Dict[str, Any] = {}
    for m in _PHP_DEFINE_RE.finditer(text):
        key = _PHP_DB_KEYS.get(m.group(1))
        if key is None:
            continue
        if m.group(4) is not None:
            db[key] = int(m.group(4))
        elif m.group(2) is not None:
            # single quotes: only \' and \\ are escapes
            db[key] = re.sub(r"\\([\\'])", r"\1", m.group(2))
        else:
            db[key] = re.sub(r"\\([nrtvef\\$\"])", lambda e: _PHP_DQ_ESCAPES[e.group(1)], m.group(3))
    return {"database": db} if db else {}


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in {".php", ".yaml", ".yml", ".json"}:
        raise ConfigError(f"Unsupported config format: {path.name}. Use .php, .yaml/.yml or .json")
    try:
        with path.open("r", encoding="utf-8") as f:
            text = f.read()
        if suffix == ".php":
            data = parse_opencart_config(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def validate_database_section(db: Dict[str, Any]) -> None:
    if not isinstance(db, dict):
        raise ConfigError(f"database config must be a mapping, got {type(db).__name__}")
    driver = db.get("driver", DatabaseConfig.driver)
    if driver not in REQUIRED_DB_KEYS:
        raise ConfigError(f"Unsupported database driver: {driver}")
    for key in REQUIRED_DB_KEYS[driver]:
        if key not in db:
            raise ConfigError(f"{key} not defined in the database config")


def deep_update_dict(d: Dict[str, Any], u: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in u.items():
        if isinstance(v, dict) and isinstance(d.get(k), dict):
            d[k] = deep_update_dict(d[k], v)
        else:
            d[k] = v
    return d


def merge_config(base: AppConfig, override: Dict[str, Any]) -> AppConfig:
    d = {
        "database": asdict(base.database),
        "llm": asdict(base.llm),
        "translation": asdict(base.translation),
        "runtime": asdict(base.runtime),
    }
    deep_update_dict(d, override)
    try:
        return AppConfig(
            database=DatabaseConfig(**d.get("database", {})),
            llm=LLMConfig(**d.get("llm", {})),
            translation=TranslationConfig(**d.get("translation", {})),
            runtime=RuntimeConfig(**d.get("runtime", {})),
        )
    except TypeError as e:
        raise ConfigError(f"Unknown config key: {e}") from e


# ---------------------- DB ----------------------
@dataclass
class CategoryDescription:
    category_id: int
    language_id: int
    name: str = ""
    description: str = ""
    description_bottom: str = ""
    meta_title: str = ""
    meta_description: str = ""
    meta_keyword: str = ""
    meta_h1: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "CategoryDescription":
        values = {f: row[f] or "" for f in TRANSLATABLE_FIELDS}
        return cls(category_id=int(row["category_id"]), language_id=int(row["language_id"]), **values)

    def fields(self) -> Dict[str, str]:
        return {f: getattr(self, f) for f in TRANSLATABLE_FIELDS}


class CategoryStore:
    """
    Reads and writes <prefix>category_description through a DB-API connection.
    Works with PyMySQL (MySQL/MariaDB) and sqlite3.
    """

    def __init__(self, conn: Any, driver: str = "mysql", prefix: str = ""):
        self.conn = conn
        self.driver = driver
        self.table = f"{prefix}category_description"
        self.ph = "?" if driver == "sqlite" else "%s"

    def _columns(self) -> str:
        return ", ".join(("category_id", "language_id") + TRANSLATABLE_FIELDS)

    def fetch_descriptions(self, language_id: int) -> List[CategoryDescription]:
        cur = self.conn.cursor()
        try:
            cur.execute(
                f"SELECT {self._columns()} FROM {self.table} WHERE language_id={self.ph} ORDER BY category_id",
                (language_id,),
            )
            return [CategoryDescription.from_row(r) for r in cur.fetchall()]
        finally:
            cur.close()

    def get_description(self, category_id: int, language_id: int) -> Optional[CategoryDescription]:
        cur = self.conn.cursor()
        try:
            cur.execute(
                f"SELECT {self._columns()} FROM {self.table} WHERE category_id={self.ph} AND language_id={self.ph}",
                (category_id, language_id),
            )
            row = cur.fetchone()
            return CategoryDescription.from_row(row) if row is not None else None
        finally:
            cur.close()

    def upsert_description(self, category_id: int, language_id: int, values: Dict[str, str], update_fields: Sequence[str]) -> None:
        """
        Insert the destination row, or update `update_fields` if it already exists.
        The insert writes every text column, missing ones as ''.
        """
        if not update_fields:
            raise ValueError("update_fields must not be empty")
        unknown = set(update_fields) - set(TRANSLATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown fields: {sorted(unknown)}")

        placeholders = ", ".join([self.ph] * (2 + len(TRANSLATABLE_FIELDS)))
        sql = f"INSERT INTO {self.table} ({self._columns()}) VALUES ({placeholders})"
        if self.driver == "sqlite":
            sets = ", ".join(f"{f}=excluded.{f}" for f in update_fields)
            sql += f" ON CONFLICT(category_id, language_id) DO UPDATE SET {sets}"
        else:
            sets = ", ".join(f"`{f}`=VALUES(`{f}`)" for f in update_fields)
            sql += f" ON DUPLICATE KEY UPDATE {sets}"

        params = (category_id, language_id) + tuple(values.get(f, "") for f in TRANSLATABLE_FIELDS)
        cur = self.conn.cursor()
        try:
            cur.execute(sql, params)
        finally:
            cur.close()
        self.conn.commit()

    def close(self):
        self.conn.close()


def connect_database(cfg: DatabaseConfig) -> CategoryStore:
    if cfg.driver == "sqlite":
        conn = sqlite3.connect(cfg.database)
        conn.row_factory = sqlite3.Row
    else:
        conn = pymysql.connect(
            host=cfg.hostname,
            user=cfg.username,
            password=cfg.password,
            database=cfg.database,
            port=int(cfg.port),
            charset="utf8mb4",
            autocommit=False,
            cursorclass=pymysql.cursors.DictCursor,
        )
    return CategoryStore(conn, driver=cfg.driver, prefix=cfg.prefix)


# ---------------------- LLM Prompt & Translation ----------------------
SYSTEM_PROMPT_TEMPLATE = (
    "You are a translation assistant for a {store_type} store. "
    "Translate the following JSON from {source_language} to {dest_language}. "
    "Preserve JSON structure; translate only values; leave empty fields empty."
)


def build_system_prompt(cfg: TranslationConfig) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(**asdict(cfg))


def build_payload(category: CategoryDescription) -> Dict[str, str]:
    """Non-empty fields only, trimmed. Empty dict means nothing to translate."""
    payload: Dict[str, str] = {}
    for name, value in category.fields().items():
        text = (value or "").strip()
        if text:
            payload[name] = text
    return payload


def build_messages(payload: Dict[str, str], cfg: TranslationConfig) -> List[BaseMessage]:
    return [
        SystemMessage(content=build_system_prompt(cfg)),
        HumanMessage(content=json.dumps(payload, ensure_ascii=False)),
    ]


def ensure_openai_env():
    if not os.getenv("OPENAI_API_KEY"):
        raise RuntimeError("Please set your OPENAI_API_KEY environment variable.")


def build_llm(cfg: LLMConfig) -> ChatOpenAI:
    ensure_openai_env()
    return ChatOpenAI(
        model=cfg.model,
        temperature=cfg.temperature,
        timeout=cfg.request_timeout,
        max_retries=0,
    )


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_translation(content: str) -> Dict[str, Any]:
    text = (content or "").strip()
    m = _FENCE_RE.match(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise TranslationError(f"Invalid JSON: {text[:200]}") from e
    if not isinstance(data, dict):
        raise TranslationError(f"Invalid JSON: expected an object, got {type(data).__name__}: {text[:200]}")
    return data


def translate_fields(llm: Any, messages: List[BaseMessage]) -> Dict[str, Any]:
    t0 = time.perf_counter()
    try:
        resp = llm.invoke(messages)
    except Exception as e:
        raise TranslationError(f"OpenAI API error: {e}") from e
    logger.debug(f"LLM request success in {time.perf_counter() - t0:.2f}s")
    return parse_translation(str(resp.content))


def select_translated_values(payload: Dict[str, str], translated: Dict[str, Any]) -> Dict[str, str]:
    """
    Pick the translated value for every field that was sent.
    A field the model left out becomes '', it does not fall back to the source text.
    """
    values: Dict[str, str] = {}
    for name in payload:
        value = translated.get(name)
        values[name] = "" if value is None else str(value)
    missing = [name for name in payload if name not in translated]
    if missing:
        logger.warning(f"Translation is missing fields {missing}; writing them as empty")
    return values


# ---------------------- Main Loop ----------------------
@dataclass
class RunStats:
    total: int = 0
    translated: int = 0
    skipped: int = 0
    failed: int = 0
    dry_run: int = 0

    @property
    def processed(self) -> int:
        return self.translated + self.skipped + self.failed + self.dry_run


def translate_category(category: CategoryDescription, store: CategoryStore, llm: Any, cfg: AppConfig) -> str:
    """Handle one category. Returns the outcome: skipped, dry_run or translated."""
    payload = build_payload(category)
    if not payload:
        logger.debug("no content to translate, skipping.")
        return "skipped"

    messages = build_messages(payload, cfg.translation)
    logger.debug(f"messages: {[(m.type, m.content) for m in messages]}")
    if not cfg.runtime.execute:
        return "dry_run"

    translated = translate_fields(llm, messages)
    values = select_translated_values(payload, translated)
    store.upsert_description(category.category_id, cfg.runtime.dest_lang_id, values, list(payload))
    logger.debug("done.")
    return "translated"


def translate_categories(rows: Sequence[CategoryDescription], store: CategoryStore, llm: Any, cfg: AppConfig) -> RunStats:
    stats = RunStats(total=len(rows))
    for i, category in enumerate(rows, start=1):
        logger.debug(f"[{i}/{stats.total}] Category ID {category.category_id}")
        try:
            outcome = translate_category(category, store, llm, cfg)
        except TranslationError as e:
            logger.error(f"Cat {category.category_id}: {e}")
            stats.failed += 1
            continue
        setattr(stats, outcome, getattr(stats, outcome) + 1)
    return stats


# ---------------------- CLI ----------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="translate-categories",
        description="Translate OpenCart category descriptions between languages using OpenAI via LangChain.",
    )
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Read and log only, no API calls or writes (default)")
    mode.add_argument("--no-dry-run", action="store_true", help="Call the API and write translations")
    p.add_argument("--verbose", action="store_true", help="Log per-category progress and request messages")
    p.add_argument("--source-lang-id", dest="source_lang_id", type=int, help="Source language_id (default: 2)")
    p.add_argument("--dest-lang-id", dest="dest_lang_id", type=int, help="Destination language_id (default: 3)")
    p.add_argument("--config", help=f"Path to config file: OpenCart config.php, YAML or JSON (default: {DEFAULT_CONFIG_FILE} in the working directory, else next to this script)")

    # LLM params
    p.add_argument("--model", help="OpenAI model name (default: gpt-4o)")
    p.add_argument("--temperature", type=float, help="Sampling temperature (default: 0.2)")
    p.add_argument("--request-timeout", dest="request_timeout", type=int, help="Request timeout (s)")
    return p


# ---------------------- Main Flow ----------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        cfg = AppConfig.from_files_and_args(args.config, args)
    except (FileNotFoundError, ConfigError) as e:
        logger.error(str(e))
        return 1

    try:
        store = connect_database(cfg.database)
    except (pymysql.MySQLError, sqlite3.Error) as e:
        logger.error(f"DB Connection failed: {e}")
        return 1

    try:
        src = cfg.runtime.source_lang_id
        rows = store.fetch_descriptions(src)
        logger.info(f"Found {len(rows)} categories with language_id={src}.")

        llm = None
        if cfg.runtime.execute:
            try:
                llm = build_llm(cfg.llm)
            except RuntimeError as e:
                logger.error(str(e))
                return 1
        else:
            logger.info("Dry run: no API calls or database writes. Pass --no-dry-run to execute.")

        start_time = time.time()
        stats = translate_categories(rows, store, llm, cfg)
    finally:
        store.close()

    elapsed = time.time() - start_time
    logger.info(
        f"Processed {stats.processed}/{stats.total} categories in {elapsed:.1f}s "
        f"(translated={stats.translated}, skipped={stats.skipped}, failed={stats.failed}, dry_run={stats.dry_run})."
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
