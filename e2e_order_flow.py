#!/usr/bin/env python3
"""
Order lifecycle - E2E smoke tests against a running deployment.

The product must already exist in the catalog table. The script plays the
payment provider itself by posting the paid webhook.

Run:
  python e2e_order_flow.py

Optional env:
  ORDER_BASE=http://localhost:8000
  PRODUCT_ID=mug-1
  ADMIN_API_KEY=...
  DEBUG=1
"""

import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List

import requests


class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def section_title(text: str):
    print(f"\n{Style.BLUE}{Style.BOLD}== {text} =={Style.RESET}")


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

ORDER_BASE = os.getenv("ORDER_BASE", "http://localhost:8000")
PRODUCT_ID = os.getenv("PRODUCT_ID", "mug-1")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
DEBUG = os.getenv("DEBUG", "0").strip() in {"1", "true", "True", "YES", "yes"}

USER_ID = f"e2e-{uuid.uuid4().hex[:8]}"


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


@dataclass
class TestResult:
    name: str
    success: bool
    details: str = ""
    scenario: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 8)
    url = ORDER_BASE + path
    debug(f"{method} {url} kwargs={kwargs}")
    return requests.request(method, url, **kwargs)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", "/health").status_code == 200:
                ok("order lifecycle service is healthy.")
                return True
        except requests.exceptions.RequestException as e:
            debug(f"service not ready: {e}")
        time.sleep(1)
    fail(f"service did not become healthy in {timeout} seconds.")
    return False


def assert_status(resp: requests.Response, expected: int, ctx: str):
    if resp.status_code != expected:
        raise AssertionError(f"{ctx}: expected HTTP {expected}, got {resp.status_code}, body={resp.text}")


def check(name: str, success: bool, details: str, scenario: str) -> TestResult:
    (ok if success else fail)(f"{name}: {details}")
    return TestResult(name, success, details, scenario)


# =========================
# API calls
# =========================

def add_to_cart(quantity: int) -> Dict[str, Any]:
    resp = http("POST", "/api/v1/cart", json={"user_id": USER_ID, "product_id": PRODUCT_ID, "quantity": quantity})
    assert_status(resp, 200, "add to cart")
    return resp.json()


def create_checkout(line_ids: List[str]) -> Dict[str, Any]:
    payload = {"user_id": USER_ID, "cart_line_ids": line_ids, "idempotency_key": f"e2e-{uuid.uuid4()}"}
    resp = http("POST", "/api/v1/checkout", json=payload)
    assert_status(resp, 200, "checkout")
    return resp.json()


def send_paid_webhook(record_ids: List[str], amount: float) -> Dict[str, Any]:
    payload = {
        "type": "checkout_session.payment.paid",
        "data": {
            "id": f"pay_{uuid.uuid4().hex[:12]}",
            "amount": amount,
            "metadata": {"order_record_ids": ",".join(record_ids)},
        },
    }
    resp = http("POST", "/api/v1/webhooks/payments", json=payload)
    assert_status(resp, 200, "payment webhook")
    return resp.json()


def get_order(record_id: str) -> Dict[str, Any]:
    resp = http("GET", f"/api/v1/orders/{record_id}")
    assert_status(resp, 200, f"GET order {record_id}")
    return resp.json()


def paid_order(quantity: int) -> str:
    line = add_to_cart(quantity)
    result = create_checkout([line["id"]])
    record_id = result["order_record_ids"][0]
    send_paid_webhook([record_id], result["totals"]["total"])
    return record_id


# =========================
# Scenarios
# =========================

def scenario_checkout_and_payment() -> List[TestResult]:
    scenario = "Scenario 1 - Checkout & Payment"
    section_title(scenario)
    results: List[TestResult] = []
    try:
        line = add_to_cart(1)
        add_to_cart(1)
        cart = http("GET", "/api/v1/cart", params={"user_id": USER_ID}).json()
        results.append(check("Cart merge", len(cart) == 1 and cart[0]["quantity"] == 2, f"cart={cart}", scenario))

        result = create_checkout([line["id"]])
        info(f"checkout {result['checkout_id']} total={result['totals']['total']} url={result['checkout_url']}")
        record_id = result["order_record_ids"][0]
        results.append(check("Order created", get_order(record_id)["status"] == "pending_payment", record_id, scenario))

        first = send_paid_webhook([record_id], result["totals"]["total"])
        results.append(check("Payment applied", first.get("applied") == [record_id], f"{first}", scenario))

        order = get_order(record_id)
        results.append(check("Order reserved", order["status"] == "reserved", f"status={order['status']}", scenario))
    except Exception as e:
        results.append(check("Checkout & Payment", False, str(e), scenario))
    return results


def scenario_cancellation() -> List[TestResult]:
    scenario = "Scenario 2 - Cancellation & Compensation"
    section_title(scenario)
    results: List[TestResult] = []
    try:
        record_id = paid_order(2)
        resp = http("POST", f"/api/v1/orders/{record_id}/cancel", json={"user_id": USER_ID})
        body = resp.json()
        results.append(check("Cancel paid order", body.get("inventory_restored") is True, f"{body}", scenario))

        order = get_order(record_id)
        results.append(
            check("Refund pending", order["payment_status"] == "refund_pending", f"payment={order['payment_status']}", scenario)
        )

        again = http("POST", f"/api/v1/orders/{record_id}/cancel", json={"user_id": USER_ID})
        results.append(check("Second cancel rejected", again.status_code == 409, f"HTTP {again.status_code}", scenario))
    except Exception as e:
        results.append(check("Cancellation", False, str(e), scenario))
    return results


def scenario_fulfillment() -> List[TestResult]:
    scenario = "Scenario 3 - Fulfillment"
    section_title(scenario)
    results: List[TestResult] = []
    headers = {"X-Admin-Key": ADMIN_API_KEY} if ADMIN_API_KEY else {}
    try:
        record_id = paid_order(1)
        for stage in ["approved", "packaging", "out_for_delivery", "completed"]:
            resp = http(
                "POST",
                f"/api/v1/admin/orders/{record_id}/status",
                json={"new_status": stage, "admin_name": "e2e"},
                headers=headers,
            )
            results.append(check(f"Move to {stage}", resp.status_code == 200, f"HTTP {resp.status_code}", scenario))

        order = get_order(record_id)
        results.append(
            check("Delivered", order["order_progress"] == "delivered", f"progress={order['order_progress']}", scenario)
        )
        back = http(
            "POST", f"/api/v1/admin/orders/{record_id}/status", json={"new_status": "approved"}, headers=headers
        )
        results.append(check("Terminal stage is final", back.status_code == 409, f"HTTP {back.status_code}", scenario))
    except Exception as e:
        results.append(check("Fulfillment", False, str(e), scenario))
    return results


def print_results(results: List[TestResult]):
    print(f"\n{Style.BOLD}================ TEST RESULTS ================ {Style.RESET}")
    passed = sum(1 for r in results if r.success)
    for r in results:
        icon = "✅" if r.success else "❌"
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{icon} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
    failed = len(results) - passed
    print(f"Total tests: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{failed}{Style.RESET}")
    if failed:
        print(f"{Style.YELLOW}- Check that product {PRODUCT_ID} exists with stock, and the service logs.{Style.RESET}")


def main():
    info(f"Testing {ORDER_BASE} as user {USER_ID}")
    if not wait_for_health():
        sys.exit(1)

    results: List[TestResult] = []
    results.extend(scenario_checkout_and_payment())
    results.extend(scenario_cancellation())
    results.extend(scenario_fulfillment())
    print_results(results)
    sys.exit(0 if all(r.success for r in results) else 1)


if __name__ == "__main__":
    main()
