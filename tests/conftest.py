"""Pytest configuration and shared fixtures for the category translator tests."""
import json
import sqlite3
import sys
from pathlib import Path

import pytest
from langchain_core.messages import AIMessage

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import translate_categories as tc  # noqa: E402

SCHEMA = """
CREATE TABLE oc_category_description (
    category_id INTEGER NOT NULL,
    language_id INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    description_bottom TEXT NOT NULL DEFAULT '',
    meta_title TEXT NOT NULL DEFAULT '',
    meta_description TEXT NOT NULL DEFAULT '',
    meta_keyword TEXT NOT NULL DEFAULT '',
    meta_h1 TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (category_id, language_id)
)
"""


def create_schema(db_path):
    conn = sqlite3.connect(str(db_path))
    conn.execute(SCHEMA)
    conn.commit()
    conn.close()


def insert_row(conn, category_id, language_id, **fields):
    cols = ["category_id", "language_id"] + list(fields)
    conn.execute(
        f"INSERT INTO oc_category_description ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))})",
        [category_id, language_id] + list(fields.values()),
    )
    conn.commit()


def count_rows(conn, language_id=None):
    if language_id is None:
        return conn.execute("SELECT COUNT(*) FROM oc_category_description").fetchone()[0]
    return conn.execute(
        "SELECT COUNT(*) FROM oc_category_description WHERE language_id=?", (language_id,)
    ).fetchone()[0]


class FakeChatModel:
    """
    Stand-in for ChatOpenAI. Each entry in `responses` is either a string
    (returned as message content), an exception (raised), or a callable that
    receives the decoded user payload and returns the content.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    @property
    def payloads(self):
        return [json.loads(messages[1].content) for messages in self.calls]

    def invoke(self, messages):
        self.calls.append(messages)
        resp = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(resp, Exception):
            raise resp
        if callable(resp):
            resp = resp(json.loads(messages[1].content))
        return AIMessage(content=resp)


def prefix_translator(prefix="UA "):
    """Responder that 'translates' every value by prefixing it."""
    return lambda payload: json.dumps({k: prefix + v for k, v in payload.items()}, ensure_ascii=False)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "opencart.sqlite3"
    create_schema(path)
    return path


@pytest.fixture
def store(db_path):
    s = tc.connect_database(tc.DatabaseConfig(driver="sqlite", database=str(db_path), prefix="oc_"))
    yield s
    s.close()


@pytest.fixture
def app_config():
    cfg = tc.AppConfig()
    cfg.runtime.execute = True
    return cfg


@pytest.fixture
def sqlite_config_file(tmp_path, db_path):
    """YAML config pointing at the sqlite test database."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "database:\n"
        "  driver: sqlite\n"
        f"  database: \"{db_path}\"\n"
        "  prefix: oc_\n",
        encoding="utf-8",
    )
    return path
