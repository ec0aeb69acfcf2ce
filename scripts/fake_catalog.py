#!/usr/bin/env python3
"""
Fake catalog platform API for local development and testing.

Implements the buyer product endpoints catalog-bot uses:
- Category listing
- Product rows per category
- Sellers per product row
- Save product row (create)
- Batch delete

Failure injection:
- saves with a seller in VERIFYING_SELLERS answer 400 (buyer verification)
- --rate-limit-every N answers every Nth request with 429
- --expire-after N answers 401 to everything after N requests

Run with: python scripts/fake_catalog.py --port 9010
Then set catalog.base_url to "http://127.0.0.1:9010/api/v1/buyer/product"
"""

import argparse
import json
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

PREFIX = "/api/v1/buyer/product"

FAKE_CATEGORIES = [
    {"id": 1, "name": "Pulsa"},
    {"id": 2, "name": "Games"},
    {"id": 3, "name": "Malaysia TOPUP"},
]

UNSET = {"code": "", "seller": "-", "price": 0, "status": False, "status_sellerSku": 0}


def row(row_id: int, product: str, brand: str, type_: str = "Umum", **fields) -> dict:
    """A product row; without fields it has no seller and no code yet."""
    return {
        "id": row_id,
        "product": product,
        **(fields or UNSET),
        "product_details": {"brand": {"name": brand}, "type": {"name": type_}},
    }


# category_id -> product rows
FAKE_ROWS: dict[int, list[dict]] = {
    1: [
        row(101, "Telkomsel 10.000", "TELKOMSEL"),
        row(102, "Telkomsel 10.000", "TELKOMSEL"),
        row(
            103,
            "Indosat 5.000",
            "INDOSAT",
            code="ISAT5",
            seller="Alpha Reload",
            price=5100,
            max_price=5100,
            status=True,
            status_sellerSku=1,
        ),
    ],
    2: [row(201, "Mobile Legends 86 Diamonds", "MOBILE LEGENDS", "Diamond")],
    3: [row(301, "Digi 10 RM", "DIGI")],
}

FAKE_SELLERS = [
    {"id": "s-1", "seller": "Alpha Reload", "price": 10150, "reviewAvg": 4.8},
    {"id": "s-2", "seller": "Beta Pulsa", "price": 10175, "reviewAvg": 4.6},
    {"id": "s-3", "seller": "Gamma Store", "price": 10200, "reviewAvg": 0},
    {"id": "s-4", "seller": "Delta Digital", "price": 10210, "reviewAvg": 4.1},
    {"id": "s-5", "seller": "Broken Feed", "price": 0},
]

# Sellers whose saves fail with the buyer verification 400
VERIFYING_SELLERS = {"s-2"}

SAVED: list[dict] = []

FAILURES = {"rate_limit_every": 0, "expire_after": 0, "count": 0}


class FakeCatalogHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the fake catalog API."""

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        """Override to add prefix."""
        print(f"[FakeCatalog] {args[0]}")

    def send_json(self, data: dict, status: int = 200) -> None:
        """Send a JSON response."""
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(data).encode())

    def send_error_json(self, status: int, message: str) -> None:
        self.send_json({"success": False, "message": message}, status=status)

    def injected_failure(self) -> bool:
        """Apply auth and failure injection; True if a response was sent."""
        FAILURES["count"] += 1
        count = FAILURES["count"]

        if not self.headers.get("X-XSRF-TOKEN"):
            self.send_error_json(401, "Unauthenticated.")
            return True
        if FAILURES["expire_after"] and count > FAILURES["expire_after"]:
            self.send_error_json(401, "Unauthenticated.")
            return True
        if FAILURES["rate_limit_every"] and count % FAILURES["rate_limit_every"] == 0:
            self.send_error_json(429, "Too Many Attempts.")
            return True
        return False

    def do_GET(self) -> None:
        """Handle GET requests."""
        if self.injected_failure():
            return

        path = urlparse(self.path).path.rstrip("/")
        if not path.startswith(PREFIX):
            self.send_error_json(404, f"Unknown endpoint: {path}")
            return
        path = path[len(PREFIX) :]

        if path == "/category":
            self.send_json({"data": FAKE_CATEGORIES})
        elif path.startswith("/category/"):
            try:
                category_id = int(path.split("/")[-1])
            except ValueError:
                self.send_error_json(400, "Invalid category id")
                return
            self.send_json({"data": FAKE_ROWS.get(category_id, [])})
        elif path.startswith("/seller/"):
            self.send_json({"data": FAKE_SELLERS})
        else:
            self.send_error_json(404, f"Unknown endpoint: {path}")

    def do_POST(self) -> None:
        """Handle POST requests."""
        if self.injected_failure():
            return

        path = urlparse(self.path).path.rstrip("/")
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length).decode() if content_length > 0 else ""

        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError:
            self.send_error_json(400, "Invalid JSON body")
            return

        if path == PREFIX:
            self.handle_save(data)
        elif path == f"{PREFIX}/multiple/delete":
            self.handle_delete(data)
        else:
            self.send_error_json(404, f"Unknown endpoint: {path}")

    def handle_save(self, data: dict) -> None:
        if not data.get("product_code"):
            self.send_error_json(422, "product_code is required")
            return
        if data.get("seller_sku_id") in VERIFYING_SELLERS:
            self.send_error_json(400, "Seller ini mewajibkan buyer melampirkan KTP / PPh22")
            return
        SAVED.append(data)
        self.send_json({"success": True, "message": "Produk berhasil disimpan", "data": data})

    def handle_delete(self, data: dict) -> None:
        ids = set(data.get("product_ids") or [])
        deleted = 0
        for category_id, rows in FAKE_ROWS.items():
            keep = [r for r in rows if r["id"] not in ids]
            deleted += len(rows) - len(keep)
            FAKE_ROWS[category_id] = keep
        self.send_json({"success": True, "message": f"{deleted} produk berhasil dihapus"})


def main() -> None:
    parser = argparse.ArgumentParser(description="Run fake catalog API server")
    parser.add_argument("--port", type=int, default=9010, help="Port to listen on (default: 9010)")
    parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--rate-limit-every", type=int, default=0, help="Answer every Nth request with 429"
    )
    parser.add_argument(
        "--expire-after", type=int, default=0, help="Answer 401 after N requests"
    )
    args = parser.parse_args()

    FAILURES["rate_limit_every"] = args.rate_limit_every
    FAILURES["expire_after"] = args.expire_after

    server = HTTPServer((args.host, args.port), FakeCatalogHandler)
    print(f"Fake catalog API running at http://{args.host}:{args.port}{PREFIX}")
    print("Categories:")
    for category in FAKE_CATEGORIES:
        print(f"  {category['id']}: {category['name']} ({len(FAKE_ROWS[category['id']])} rows)")
    print()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
        server.shutdown()


if __name__ == "__main__":
    main()
