import pytest

from portal.core.config import Settings

BASE = "postgresql://user:pw@db.example.com:5432/portal"


def make_settings(url: str) -> Settings:
    return Settings(DATABASE_URL=url, SECRET_KEY="test-secret")


@pytest.mark.unit
@pytest.mark.parametrize("url, expected", [
    (
        f"{BASE}?channel_binding=require&sslmode=require",
        "postgresql+asyncpg://user:pw@db.example.com:5432/portal?ssl=require",
    ),
    (
        f"{BASE}?sslmode=require&channel_binding=require",
        "postgresql+asyncpg://user:pw@db.example.com:5432/portal?ssl=require",
    ),
    (
        f"{BASE}?sslmode=require&channel_binding=require&application_name=portal",
        "postgresql+asyncpg://user:pw@db.example.com:5432/portal?ssl=require&application_name=portal",
    ),
    (
        f"{BASE}?channel_binding=require",
        "postgresql+asyncpg://user:pw@db.example.com:5432/portal",
    ),
])
def test_channel_binding_is_removed_keeping_query_separator(url, expected):
    assert make_settings(url).DATABASE_URL == expected


@pytest.mark.unit
def test_sqlite_url_uses_async_driver():
    assert make_settings("sqlite:///./local.db").DATABASE_URL == "sqlite+aiosqlite:///./local.db"
