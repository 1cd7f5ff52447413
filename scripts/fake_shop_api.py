#!/usr/bin/env python3
"""
Fake item shop API server for local development and testing.

Implements the endpoints shop-tracker reads:
- GET /api/shop: today's sections with item ids
- GET /api/images?search=...: item lookup by id or name

Every body carries a ``status`` field like the real API. ``--fail-every N``
makes every Nth request return a 503 so retries and stale fallbacks can be
watched in the logs.

Run with: python scripts/fake_shop_api.py --port 9010
Then set in shop_tracker.yaml: api: {base_url: "http://127.0.0.1:9010/api"}
"""

import argparse
import json
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

FAKE_ITEMS = {
    "5ab1723e5f957f27504aa502": {
        "id": "5ab1723e5f957f27504aa502",
        "name": "Raven",
        "type": "outfit",
        "readableType": "Outfit",
        "rarity": "legendary",
        "price": "2,000",
        "images": {"icon": "https://image.fnbr.co/outfit/raven/icon.png", "featured": None},
    },
    "5ab1723e5f957f27504aa503": {
        "id": "5ab1723e5f957f27504aa503",
        "name": "Raven Team Leader",
        "type": "outfit",
        "readableType": "Outfit",
        "rarity": "epic",
        "price": "1,500",
        "images": {"icon": "https://image.fnbr.co/outfit/rtl/icon.png"},
    },
    "5ab1723e5f957f27504aa504": {
        "id": "5ab1723e5f957f27504aa504",
        "name": "Pickaxe of Testing",
        "type": "pickaxe",
        "readableType": "Harvesting Tool",
        "rarity": "rare",
        "price": "800",
        "images": {"png": "https://image.fnbr.co/pickaxe/testing/png.png"},
    },
    "5ab1723e5f957f27504aa505": {
        "id": "5ab1723e5f957f27504aa505",
        "name": "Mystery Glider",
        "type": "glider",
        "rarity": "Uncommon",
        "price": "???",
        "images": {},
    },
}

FAKE_SECTIONS = [
    {
        "key": "featured",
        "displayName": "Featured",
        "items": ["5ab1723e5f957f27504aa502", "5ab1723e5f957f27504aa503"],
    },
    {
        "key": "daily",
        "displayName": "Daily",
        "items": ["5ab1723e5f957f27504aa504", "5ab1723e5f957f27504aa505"],
    },
    {"key": "empty", "displayName": "Coming Soon", "items": []},
]


class FakeShopHandler(BaseHTTPRequestHandler):
    """HTTP handler for fake item shop endpoints."""

    fail_every = 0
    request_count = 0

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        """Override to add prefix."""
        print(f"[FakeShop] {args[0]}")

    def send_json(self, data: dict, status: int = 200) -> None:
        """Send a JSON response."""
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(data).encode())

    def send_error_json(self, status: int, message: str) -> None:
        """Send an error body in the upstream shape."""
        self.send_json({"status": status, "error": message}, status=status)

    def do_GET(self) -> None:
        """Handle GET requests."""
        cls = type(self)
        cls.request_count += 1
        if cls.fail_every and cls.request_count % cls.fail_every == 0:
            self.send_error_json(503, "Service temporarily unavailable")
            return

        parsed = urlparse(self.path)
        query_params = parse_qs(parsed.query)

        if parsed.path == "/api/shop":
            self.handle_shop()
        elif parsed.path == "/api/images":
            self.handle_images(query_params)
        else:
            self.send_error_json(404, f"Unknown endpoint: {parsed.path}")

    def handle_shop(self) -> None:
        self.send_json(
            {
                "status": 200,
                "data": {
                    "date": datetime.now(UTC).strftime("%Y-%m-%dT00:00:00.000Z"),
                    "sections": FAKE_SECTIONS,
                },
            }
        )

    def handle_images(self, params: dict) -> None:
        """Look up items by exact id, else by case-insensitive name substring."""
        search = params.get("search", [""])[0]
        if not search:
            self.send_error_json(400, "search parameter required")
            return
        limit = int(params.get("limit", ["15"])[0])
        item_type = params.get("type", [None])[0]

        if search in FAKE_ITEMS:
            matches = [FAKE_ITEMS[search]]
        else:
            matches = [
                item
                for item in FAKE_ITEMS.values()
                if search.lower() in item["name"].lower()
                and (item_type is None or item["type"] == item_type)
            ]

        self.send_json({"status": 200, "data": matches[:limit]})


def main() -> None:
    parser = argparse.ArgumentParser(description="Run fake item shop API server")
    parser.add_argument(
        "--port",
        type=int,
        default=9010,
        help="Port to listen on (default: 9010)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--fail-every",
        type=int,
        default=0,
        help="Return HTTP 503 for every Nth request (default: never)",
    )
    args = parser.parse_args()

    FakeShopHandler.fail_every = args.fail_every
    server = HTTPServer((args.host, args.port), FakeShopHandler)
    print(f"Fake shop API running at http://{args.host}:{args.port}/api")
    print(f"Items: {', '.join(item['name'] for item in FAKE_ITEMS.values())}")
    print()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
        server.shutdown()


if __name__ == "__main__":
    main()
