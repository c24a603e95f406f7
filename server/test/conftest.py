import os
import io
import pathlib
import sqlite3
import datetime as dt
import tempfile

import pikepdf
import pytest
from sqlalchemy import create_engine, text

# ---------------------------------------------------------------------------
# Make sure sqlite can handle pathlib.Path and datetime objects
# ---------------------------------------------------------------------------
sqlite3.register_adapter(pathlib.Path, lambda p: str(p))
sqlite3.register_adapter(pathlib.PosixPath, lambda p: str(p))
sqlite3.register_adapter(dt.datetime, lambda d: d.isoformat(" "))

# ---------------------------------------------------------------------------
# Basic test configuration
# ---------------------------------------------------------------------------

# Disable rate limiting in tests
os.environ.setdefault("RATELIMIT_ENABLED", "0")
os.environ.setdefault("RATELIMIT_STORAGE_URI", "memory://")

# Dummy DB settings (real connection replaced by our SQLite engine)
os.environ.setdefault("DB_HOST", "localhost")
os.environ.setdefault("DB_PORT", "3306")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "ebooks_test")

# Importing server builds the module-level app; keep its storage out of the repo
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="ebook-storage-"))

NOW = dt.datetime(2025, 3, 1, 12, 0, 0)

ALICE, BOB, ADMIN = 1, 2, 9
GUIDE, POSTER, LOST_BOOK, NO_FILE_BOOK = 10, 11, 12, 13
ALICE_PAID, ALICE_PENDING, BOB_PAID = 100, 101, 102

DDL = [
    """
    CREATE TABLE Users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        email TEXT,
        mobile TEXT,
        role TEXT NOT NULL DEFAULT 'customer'
    );
    """,
    """
    CREATE TABLE Products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        product_type TEXT NOT NULL,
        digital_file TEXT
    );
    """,
    """
    CREATE TABLE Orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        order_number TEXT NOT NULL,
        payment_status TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE OrderItems (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE AccessGrants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        order_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        access_token TEXT NOT NULL UNIQUE,
        token_expiry DATETIME NOT NULL,
        origin_address TEXT NOT NULL,
        device_fingerprint TEXT NOT NULL,
        allowed_origins TEXT NOT NULL,
        allowed_devices TEXT NOT NULL,
        origin_drifted INTEGER NOT NULL DEFAULT 0,
        device_drifted INTEGER NOT NULL DEFAULT 0,
        last_access_at DATETIME,
        access_count INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        active_key TEXT UNIQUE,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL
    );
    """,
]

SEED = [
    "INSERT INTO Users (id, name, email, mobile, role) VALUES "
    "(1, 'Alice Reader', 'alice@example.com', NULL, 'customer'), "
    "(2, 'Bob Mobile', NULL, '+15550100', 'customer'), "
    "(9, 'Site Admin', 'admin@example.com', NULL, 'admin')",
    "INSERT INTO Products (id, title, product_type, digital_file) VALUES "
    "(10, 'Field Guide', 'digital', 'field-guide.pdf'), "
    "(11, 'Poster', 'physical', NULL), "
    "(12, 'Lost Book', 'digital', 'missing.pdf'), "
    "(13, 'Unfinished Book', 'digital', NULL)",
    "INSERT INTO Orders (id, user_id, order_number, payment_status) VALUES "
    "(100, 1, 'ORD-100', 'paid'), "
    "(101, 1, 'ORD-101', 'pending'), "
    "(102, 2, 'ORD-102', 'paid')",
    "INSERT INTO OrderItems (order_id, product_id) VALUES "
    "(100, 10), (100, 11), (101, 10), (102, 10), (102, 12), (102, 13)",
]


class FakeClock:
    def __init__(self, now: dt.datetime = NOW):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


def make_pdf(pages: int = 1, size=(612, 792)) -> bytes:
    """A real multi-page PDF with a little drawing on every page."""
    pdf = pikepdf.new()
    for _ in range(pages):
        page = pdf.add_blank_page(page_size=size)
        page.contents_add(pdf.make_stream(b"0.2 0.2 0.8 rg 20 20 100 60 re f\n"))
    buf = io.BytesIO()
    pdf.save(buf, deterministic_id=True)
    return buf.getvalue()


def shown_text(pdf_bytes: bytes) -> list[list[str]]:
    """Strings drawn with Tj, per page."""
    out = []
    with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
        for page in pdf.pages:
            strings = []
            for operands, operator in pikepdf.parse_content_stream(page):
                if str(operator) == "Tj":
                    strings.append(bytes(operands[0]).decode("cp1252"))
            out.append(strings)
    return out


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    """SQLite database with the grant table and a small seeded shop."""
    eng = create_engine(f"sqlite:///{tmp_path / 'ebooks.sqlite'}", future=True)
    with eng.begin() as conn:
        for stmt in DDL + SEED:
            conn.execute(text(stmt))
    yield eng
    eng.dispose()


@pytest.fixture
def sample_pdf_bytes():
    return make_pdf(pages=3)


@pytest.fixture
def storage_dir(tmp_path, sample_pdf_bytes):
    root = tmp_path / "storage"
    (root / "ebooks").mkdir(parents=True)
    (root / "ebooks" / "field-guide.pdf").write_bytes(sample_pdf_bytes)
    return root


@pytest.fixture
def app(monkeypatch, engine, storage_dir):
    """Fresh Flask app backed by the SQLite engine and the temp storage dir."""
    monkeypatch.setenv("STORAGE_DIR", str(storage_dir))
    monkeypatch.setenv("RATELIMIT_ENABLED", "0")
    from server import create_app

    app = create_app()
    app.config["_ENGINE"] = engine
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session_headers(app):
    """Build an Authorization header for a user id and role."""
    from server import make_session_token

    def build(uid: int, role: str = "customer") -> dict:
        return {"Authorization": f"Bearer {make_session_token(app, uid, role)}"}

    return build
