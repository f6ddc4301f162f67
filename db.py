import os, sqlite3, threading, time

# --- Persistent locations (works on Render or locally) ---
DATA_ROOT = os.getenv("DATA_ROOT", "/var/data/dailypimart")
DB_PATH   = os.getenv("SQLITE_DB_PATH", os.path.join(DATA_ROOT, "app.sqlite"))
BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))  # 3s default

_lock = threading.Lock()

def _ensure_dirs():
    try:
        os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    except OSError:
        pass

def conn():
    _ensure_dirs()
    cx = sqlite3.connect(DB_PATH, check_same_thread=False, detect_types=sqlite3.PARSE_DECLTYPES)
    cx.row_factory = sqlite3.Row
    cx.execute("PRAGMA foreign_keys=ON;")
    cx.execute("PRAGMA journal_mode=WAL;")
    cx.execute("PRAGMA synchronous=NORMAL;")
    cx.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
    return cx

def init_db():
    _ensure_dirs()
    with _lock, conn() as cx:
        cx.executescript("""
        CREATE TABLE IF NOT EXISTS users(
          id INTEGER PRIMARY KEY,
          pi_uid TEXT UNIQUE,
          pi_username TEXT,
          email TEXT,
          created_at INTEGER,
          last_login_at INTEGER
        );

        CREATE TABLE IF NOT EXISTS products(
          id INTEGER PRIMARY KEY,
          slug TEXT UNIQUE NOT NULL,
          title TEXT NOT NULL,
          category TEXT,
          description TEXT,
          image_url TEXT,
          pi_price REAL NOT NULL,
          stock_qty INTEGER NOT NULL DEFAULT 0,
          active INTEGER DEFAULT 1
        );
        CREATE INDEX IF NOT EXISTS idx_products_category ON products(category, active);

        CREATE TABLE IF NOT EXISTS carts(
          id TEXT PRIMARY KEY,
          user_id INTEGER,
          created_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS cart_items(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          cart_id TEXT NOT NULL,
          product_id INTEGER NOT NULL,
          qty INTEGER NOT NULL,
          UNIQUE(cart_id, product_id),
          FOREIGN KEY(cart_id) REFERENCES carts(id) ON DELETE CASCADE,
          FOREIGN KEY(product_id) REFERENCES products(id)
        );

        CREATE TABLE IF NOT EXISTS orders(
          id INTEGER PRIMARY KEY,
          user_id INTEGER NOT NULL,
          pi_amount REAL NOT NULL,
          memo TEXT,
          status TEXT NOT NULL DEFAULT 'pending',  -- pending|approved|paid|cancelled
          pi_payment_id TEXT UNIQUE,
          pi_txid TEXT,
          pi_status_json TEXT,
          buyer_email TEXT,
          created_at INTEGER NOT NULL,
          updated_at INTEGER,
          FOREIGN KEY(user_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at);

        CREATE TABLE IF NOT EXISTS order_items(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          order_id INTEGER NOT NULL,
          product_id INTEGER NOT NULL,
          title TEXT,
          unit_price REAL NOT NULL,
          qty INTEGER NOT NULL,
          FOREIGN KEY(order_id) REFERENCES orders(id) ON DELETE CASCADE
        );
        """)

# Default shelf for a fresh database.
CATALOG = [
    # slug, title, category, description, price, stock
    ("fresh-bananas", "Fresh Bananas (1 kg)", "produce", "Ripe, sweet and ready to eat.", 0.25, 120),
    ("farm-eggs-12", "Farm Eggs (12 pack)", "dairy", "Free-range eggs from local farms.", 0.4, 80),
    ("whole-milk-1l", "Whole Milk (1 L)", "dairy", "Pasteurised whole milk.", 0.18, 60),
    ("sourdough-loaf", "Sourdough Loaf", "bakery", "Baked every morning.", 0.3, 40),
    ("basmati-rice-5kg", "Basmati Rice (5 kg)", "pantry", "Long-grain aged basmati.", 1.2, 35),
    ("olive-oil-500ml", "Extra Virgin Olive Oil (500 ml)", "pantry", "Cold pressed.", 0.9, 25),
    ("ground-coffee-250g", "Ground Coffee (250 g)", "beverages", "Medium roast.", 0.65, 50),
    ("dish-soap", "Dish Soap", "household", "Lemon scented, 750 ml.", 0.15, 90),
]

def seed_catalog(rows=None):
    """Insert the default catalog when the products table is empty. Returns rows inserted."""
    rows = CATALOG if rows is None else rows
    with _lock, conn() as cx:
        n = cx.execute("SELECT COUNT(*) AS n FROM products").fetchone()["n"]
        if n:
            return 0
        cx.executemany("""
          INSERT INTO products(slug, title, category, description, pi_price, stock_qty)
          VALUES(?,?,?,?,?,?)
        """, rows)
    return len(rows)

def now_i() -> int:
    return int(time.time())
