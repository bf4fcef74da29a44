from omnichannel import main
from omnichannel.webhook import unverified_webhook_endpoints


class FakePayments:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.webhooks = []
        self.confirmed = []

    async def handle_webhook(self, payload, provider="asaas"):
        if self.fail:
            raise RuntimeError("provider exploded")
        self.webhooks.append(payload)

    async def confirm_payment(self, payment_id):
        self.confirmed.append(payment_id)
        return {"orderId": "ord-1"}


def test_asaas_rejects_wrong_token_when_configured(client, monkeypatch):
    payments = FakePayments()
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", "tok-123")
    monkeypatch.setattr(main.runtime.services, "payment", payments)

    r = client.post("/webhooks/payments/asaas", json={"event": "PAYMENT_RECEIVED"}, headers={"asaas-access-token": "nope"})
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    missing = client.post("/webhooks/payments/asaas", json={"event": "PAYMENT_RECEIVED"})
    assert missing.status_code == 401
    assert payments.webhooks == []


def test_asaas_accepts_matching_token(client, monkeypatch):
    payments = FakePayments()
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", '"tok-123"')
    monkeypatch.setattr(main.runtime.services, "payment", payments)

    body = {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_1"}}
    r = client.post("/webhooks/payments/asaas", json=body, headers={"asaas-access-token": "tok-123"})
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert payments.webhooks == [body]


def test_asaas_malformed_body_is_forwarded_as_empty(client, monkeypatch):
    payments = FakePayments()
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", None)
    monkeypatch.setattr(main.runtime.services, "payment", payments)
    r = client.post("/webhooks/payments/asaas", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 200
    assert payments.webhooks == [{}]


def test_asaas_processing_failure_still_acknowledges(client, monkeypatch):
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", None)
    monkeypatch.setattr(main.runtime.services, "payment", FakePayments(fail=True))
    r = client.post("/webhooks/payments/asaas", json={"event": "PAYMENT_RECEIVED"})
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_webhooks_without_payment_service_acknowledge(client, monkeypatch):
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", None)
    assert client.post("/webhooks/payments/asaas", json={}).json() == {"ok": True}
    r = client.post("/webhooks/payments/mercadopago", json={"action": "payment.updated", "data": {"id": 1}})
    assert r.json() == {"ok": True}


def test_mercadopago_confirms_updated_payments_only(client, monkeypatch):
    payments = FakePayments()
    monkeypatch.setattr(main.runtime.services, "payment", payments)

    client.post("/webhooks/payments/mercadopago", json={"action": "payment.updated", "data": {"id": 987654}})
    client.post("/webhooks/payments/mercadopago", json={"action": "payment.created", "data": {"id": 1}})
    client.post("/webhooks/payments/mercadopago", json={"action": "payment.updated", "data": {}})
    r = client.post("/webhooks/payments/mercadopago", content=b"[]", headers={"content-type": "application/json"})

    assert r.status_code == 200
    assert payments.confirmed == ["987654"]


def test_unverified_endpoints_reflect_configuration(monkeypatch):
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", None)
    assert unverified_webhook_endpoints(main.runtime) == [
        "/webhooks/payments/asaas",
        "/webhooks/payments/mercadopago",
    ]
    monkeypatch.setattr(main.runtime, "asaas_webhook_token", "tok")
    assert unverified_webhook_endpoints(main.runtime) == ["/webhooks/payments/mercadopago"]
