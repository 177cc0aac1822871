import pathlib
import sys
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from cruise_pricing import main, persistence  # noqa: E402


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "DATA_FILE", str(tmp_path / "promotions.json"))
    monkeypatch.setattr(main, "_PROMOTIONS", None)
    return TestClient(main.app)


def _promotion(pid: str, **kw) -> dict:
    now = datetime.now(tz=timezone.utc)
    body = {
        "id": pid,
        "name": f"Promo {pid}",
        "description": "",
        "discount_type": "percentage",
        "discount_value": "10",
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_to": (now + timedelta(days=30)).isoformat(),
        "is_combinable": True,
        "priority": 1,
    }
    body.update(kw)
    return body


def _quote_body(**kw) -> dict:
    body = {
        "base_price": "500",
        "cabin_multiplier": "1.2",
        "guest_count": 2,
        "extras": [{"price": "50", "quantity": 2}],
        "booking": {"cruise_line": "Celebrity", "destination": "Alaska", "cabin_type": "suite"},
        "currency": "USD",
    }
    body.update(kw)
    return body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_currencies(client):
    r = client.get("/currencies")
    assert r.status_code == 200
    codes = {c["code"]: c["rate"] for c in r.json()}
    assert codes == {"USD": 1.0, "EUR": 0.85, "SGD": 1.35, "THB": 32.5}


def test_quote_without_promotions(client):
    r = client.post("/pricing/quote", json=_quote_body())
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["currency"] == "USD"
    assert q["subtotal"] == 1300.0
    assert q["tax_amount"] == 123.5
    assert q["gratuity_amount"] == 156.0
    assert q["final_total"] == 1579.5
    assert q["applied_promotions"] == []
    assert q["payment"] == {"valid": True, "error": None}


def test_catalog_promotions_apply_to_quotes(client):
    r = client.post("/promotions", json=_promotion("alaska", conditions={"destinations": ["Alaska"]}))
    assert r.status_code == 200, r.text
    assert r.json()["discount_text"] == "10% OFF"
    r = client.post("/promotions", json=_promotion("med", conditions={"destinations": ["Mediterranean"]}))
    assert r.status_code == 200, r.text

    listed = client.get("/promotions").json()
    assert {p["id"] for p in listed} == {"alaska", "med"}

    r = client.post("/pricing/quote", json=_quote_body())
    q = r.json()
    assert [p["id"] for p in q["applied_promotions"]] == ["alaska"]
    assert q["discount_amount"] == 157.95
    assert q["final_total"] == 1421.55

    # Catalog is written through to the file.
    assert [p.id for p in persistence.load_promotions()] == ["alaska", "med"]


def test_quote_can_restrict_to_promotion_ids(client):
    client.post("/promotions", json=_promotion("a", priority=2))
    client.post("/promotions", json=_promotion("b", discount_type="fixed", discount_value="100"))

    r = client.post("/pricing/quote", json=_quote_body(promotion_ids=["b"]))
    assert [p["id"] for p in r.json()["applied_promotions"]] == ["b"]

    r = client.post("/pricing/quote", json=_quote_body(promotion_ids=["nope"]))
    assert r.status_code == 404


def test_quote_with_inline_promotions_in_thb(client):
    body = _quote_body(
        currency="thb",
        promotions=[_promotion("exclusive", discount_type="fixed", discount_value="79.50", is_combinable=False, priority=9), _promotion("other")],
    )
    r = client.post("/pricing/quote", json=body)
    assert r.status_code == 200, r.text
    q = r.json()
    assert q["currency"] == "THB"
    assert [p["id"] for p in q["applied_promotions"]] == ["exclusive"]
    assert q["final_total"] == 48750.0
    assert q["payment"]["valid"]


def test_inactive_promotions_are_hidden(client):
    client.post("/promotions", json=_promotion("off", is_active=False))
    assert client.get("/promotions").json() == []


def test_invalid_promotion_payloads(client):
    r = client.post("/promotions", json=_promotion("bad", discount_type="bogo"))
    assert r.status_code == 400

    now = datetime.now(tz=timezone.utc)
    r = client.post(
        "/promotions",
        json=_promotion("backwards", valid_from=now.isoformat(), valid_to=(now - timedelta(days=1)).isoformat()),
    )
    assert r.status_code == 400


def test_bad_currency_is_rejected(client):
    r = client.post("/pricing/quote", json=_quote_body(currency="US"))
    assert r.status_code == 400


def test_promotion_check_explains_ineligibility(client):
    client.post(
        "/promotions",
        json=_promotion("early", conditions={"early_booking_days": 90, "min_guests": 4}),
    )
    r = client.post(
        "/promotions/early/check",
        json={
            "subtotal": "1300",
            "booking": {"guest_count": 2, "departure_date": (date.today() + timedelta(days=20)).isoformat()},
        },
    )
    assert r.status_code == 200, r.text
    out = r.json()
    assert out["eligible"] is False
    assert len(out["reasons"]) == 2

    r = client.post("/promotions/missing/check", json={"subtotal": "1", "booking": {"guest_count": 2}})
    assert r.status_code == 404


def test_promotion_check_needs_guest_count(client):
    client.post("/promotions", json=_promotion("groups", conditions={"min_guests": 4}))

    r = client.post("/promotions/groups/check", json={"subtotal": "1300", "booking": {}})
    assert r.status_code == 400

    r = client.post("/promotions/groups/check", json={"subtotal": "1300", "booking": {"guest_count": 4}})
    assert r.status_code == 200, r.text
    assert r.json()["eligible"] is True


def test_payment_validation(client):
    r = client.post("/payments/validate", json={"amount": "0.10", "currency": "usd"})
    assert r.json()["valid"] is False
    assert "too small" in r.json()["error"]

    r = client.post("/payments/validate", json={"amount_minor": 2000, "currency": "THB"})
    assert r.json() == {"valid": True, "error": None}

    r = client.post("/payments/validate", json={"amount": "100", "currency": "XYZ"})
    assert r.json()["error"] == "Unsupported currency: XYZ"

    r = client.post("/payments/validate", json={"currency": "USD"})
    assert r.status_code == 400
