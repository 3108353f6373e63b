#!/usr/bin/env python3
"""
Integration Test Suite for the Storefront services

Usage:
    1. Start MongoDB and the three services (auth :8001, products :8002, cart :8003)
    2. Create an admin account and export ADMIN_EMAIL / ADMIN_PASSWORD
    3. Run the script: python tests/integration_test.py

This script tests the full flow:
    - Authentication (Register/Login)
    - Product Management (admin)
    - Shopping Cart: add, merge, stock rejection, update, snapshot price, remove, clear
    - Security/Negative Tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
from datetime import datetime
from typing import Dict, Any

# Configuration
AUTH_URL = os.getenv("AUTH_URL", "http://localhost:8001")
PRODUCTS_URL = os.getenv("PRODUCTS_URL", "http://localhost:8002")
CART_URL = os.getenv("CART_URL", "http://localhost:8003")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Password123!")
RESULTS_FILE = "integration_test_results.json"

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.utcnow().isoformat()
        })
        color = Colors.GREEN if status == "PASS" else Colors.FAIL
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  Error: {error}", Colors.FAIL)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            self.save_result(name, "PASS", time.time() - start)
        except AssertionError as e:
            self.save_result(name, "FAIL", time.time() - start, str(e))
        except requests.RequestException as e:
            self.save_result(name, "ERROR", time.time() - start, str(e))

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def user_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.store['user_token']}"}

    def admin_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.store['admin_token']}"}

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "failed": len([r for r in self.results if r["status"] != "PASS"]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Scenarios ---

def check_health(runner: TestRunner):
    for url in (AUTH_URL, PRODUCTS_URL, CART_URL):
        resp = runner.session.get(f"{url}/health")
        runner.assert_status(resp, 200)

def login(runner: TestRunner, email: str, password: str) -> str:
    resp = runner.session.post(f"{AUTH_URL}/login", json={"email": email, "password": password})
    runner.assert_status(resp, 200)
    return resp.json()["data"]["token"]["access_token"]

def register_and_login(runner: TestRunner):
    stamp = int(time.time())
    user = {
        "username": f"shopper_{stamp}",
        "email": f"shopper_{stamp}@test.com",
        "password": "Password123!",
    }
    resp = runner.session.post(f"{AUTH_URL}/register", json=user)
    runner.assert_status(resp, 201)
    runner.store["user_token"] = login(runner, user["email"], user["password"])
    runner.store["admin_token"] = login(runner, ADMIN_EMAIL, ADMIN_PASSWORD)
    # Cookies from login would otherwise authenticate later negative checks
    runner.session.cookies.clear()

def create_product(runner: TestRunner):
    product = {
        "name": "Integration Test Mug",
        "description": "Holds coffee",
        "price": "10.00",
        "category": "kitchen",
        "stock": 5
    }
    resp = runner.session.post(f"{PRODUCTS_URL}/products", json=product, headers=runner.admin_headers())
    runner.assert_status(resp, 201)
    runner.store["product_id"] = resp.json()["data"]["id"]

def empty_cart_is_not_found(runner: TestRunner):
    resp = runner.session.get(f"{CART_URL}/cart", headers=runner.user_headers())
    runner.assert_status(resp, 404)

def add_and_merge(runner: TestRunner):
    pid = runner.store["product_id"]
    resp = runner.session.post(f"{CART_URL}/cart/items", json={"productId": pid, "quantity": 3}, headers=runner.user_headers())
    runner.assert_status(resp, 201)
    if resp.json()["totalPrice"] != 30.0:
        raise AssertionError(f"Expected totalPrice 30.0, got {resp.json()['totalPrice']}")

    resp = runner.session.post(f"{CART_URL}/cart/items", json={"productId": pid, "quantity": 3}, headers=runner.user_headers())
    runner.assert_status(resp, 400)
    if resp.json()["details"]["availableStock"] != 5:
        raise AssertionError("availableStock missing from stock rejection")

def snapshot_price(runner: TestRunner):
    pid = runner.store["product_id"]
    resp = runner.session.put(f"{PRODUCTS_URL}/products/{pid}", json={"price": "15.00"}, headers=runner.admin_headers())
    runner.assert_status(resp, 200)

    cart = runner.session.get(f"{CART_URL}/cart", headers=runner.user_headers()).json()
    if cart["items"][0]["price"] != 10.0:
        raise AssertionError("Cart line price followed the catalog instead of the snapshot")

def update_quantity(runner: TestRunner):
    pid = runner.store["product_id"]
    resp = runner.session.put(f"{CART_URL}/cart/items/{pid}", json={"quantity": 5}, headers=runner.user_headers())
    runner.assert_status(resp, 200)
    if resp.json()["totalPrice"] != 75.0:
        raise AssertionError(f"Expected re-snapshotted totalPrice 75.0, got {resp.json()['totalPrice']}")

    resp = runner.session.put(f"{CART_URL}/cart/items/{pid}", json={"quantity": 0}, headers=runner.user_headers())
    runner.assert_status(resp, 200)
    if resp.json()["totalItems"] != 0:
        raise AssertionError("Item not removed by zero quantity")

def remove_and_clear(runner: TestRunner):
    pid = runner.store["product_id"]
    resp = runner.session.delete(f"{CART_URL}/cart/items/{pid}", headers=runner.user_headers())
    runner.assert_status(resp, 200)
    resp = runner.session.delete(f"{CART_URL}/cart/clear", headers=runner.user_headers())
    runner.assert_status(resp, 200)
    if resp.json()["items"]:
        raise AssertionError("Cart not cleared")

def negative_checks(runner: TestRunner):
    resp = runner.session.get(f"{CART_URL}/cart", headers={"Authorization": "Bearer invalid_token"})
    runner.assert_status(resp, 401)

    resp = runner.session.post(
        f"{PRODUCTS_URL}/products",
        json={"name": "Bad", "description": "x", "price": "-10", "category": "bad"},
        headers=runner.admin_headers(),
    )
    runner.assert_status(resp, 422)

    resp = runner.session.delete(f"{PRODUCTS_URL}/products/{runner.store['product_id']}", headers=runner.user_headers())
    runner.assert_status(resp, 403)

def cleanup(runner: TestRunner):
    resp = runner.session.delete(f"{PRODUCTS_URL}/products/{runner.store['product_id']}", headers=runner.admin_headers())
    runner.assert_status(resp, 200)


def main():
    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    runner.run_test("Health Check", check_health, runner)
    runner.run_test("Register and Login", register_and_login, runner)
    runner.run_test("Create Product", create_product, runner)
    runner.run_test("Cart Not Found Before First Add", empty_cart_is_not_found, runner)
    runner.run_test("Add, Merge and Stock Rejection", add_and_merge, runner)
    runner.run_test("Snapshot Price", snapshot_price, runner)
    runner.run_test("Update Quantity", update_quantity, runner)
    runner.run_test("Remove and Clear", remove_and_clear, runner)
    runner.run_test("Negative Checks", negative_checks, runner)
    runner.run_test("Cleanup", cleanup, runner)

    runner.save_report()

    if any(r["status"] != "PASS" for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
