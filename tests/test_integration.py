"""
Integration Tests

Separate PSP, PCC and bank applications wired over HostRouter. These
cover the HTTP contracts of every hop and the full card payment chain.
"""

import uuid
from decimal import Decimal

import pytest

from paychain.status import TransactionStatus

from conftest import BANK_A_URL, BANK_B_URL, PCC_URL, PSP_URL, UNKNOWN_BIN_PAN, card_payload, fake


def pcc_body(card, amount=1000, acquirer_order_id=None, **card_overrides):
    return {
        "acquirerOrderId": acquirer_order_id or str(uuid.uuid4()),
        "acquirerTimestamp": "2026-03-01T12:00:00+00:00",
        "cardData": card_payload(card, **card_overrides),
        "amount": amount,
        "currency": "RSD",
        "merchantId": "merchant-1",
    }


class TestEndToEnd:

    @pytest.mark.e2e
    @pytest.mark.integration
    async def test_card_payment_through_whole_chain(self, client, visa_card):
        psp_response = await client.post(f"{PSP_URL}/api/psp/payments", json={
            "webShopClientId": "shop-1",
            "paymentType": "card",
            "amount": 1000,
            "currency": "RSD",
            "merchantOrderId": str(uuid.uuid4()),
            "returnUrl": "http://shop.test/success",
            "cancelUrl": "http://shop.test/cancel",
        })
        assert psp_response.status_code == 200
        psp_payment = psp_response.json()
        assert psp_payment["success"] is True
        assert "/card-payment?paymentId=" in psp_payment["paymentUrl"]
        payment_id = psp_payment["paymentUrl"].split("paymentId=")[1]

        bank_response = await client.post(f"{BANK_A_URL}/api/bank/payment/process", json={
            "paymentId": payment_id,
            "cardData": card_payload(visa_card),
        })
        assert bank_response.status_code == 200
        result = bank_response.json()
        assert result["success"] is True
        assert result["status"] == TransactionStatus.COMPLETED
        assert result["redirectUrl"] == "http://shop.test/success"

        acquirer_order_id = result["acquirerOrderId"]
        pcc_status = (await client.get(f"{PCC_URL}/api/pcc/transaction/{acquirer_order_id}/status")).json()
        order = (await client.get(f"{BANK_A_URL}/api/bank/payment/orders/{acquirer_order_id}")).json()
        psp_transaction = (await client.get(
            f"{PSP_URL}/api/psp/payments/{psp_payment['pspTransactionId']}"
        )).json()

        assert pcc_status["status"] == TransactionStatus.COMPLETED
        assert pcc_status["issuerOrderId"] == order["issuerOrderId"]
        assert order["status"] == TransactionStatus.COMPLETED
        assert psp_transaction["status"] == TransactionStatus.COMPLETED
        assert psp_transaction["externalTransactionId"] == acquirer_order_id
        assert psp_transaction["completedAt"] is not None

        issuer_order = (await client.get(f"{BANK_A_URL}/api/bank/issuer/orders/{order['issuerOrderId']}")).json()
        assert issuer_order["acquirerOrderId"] == acquirer_order_id
        assert issuer_order["success"] is True

    @pytest.mark.e2e
    @pytest.mark.integration
    async def test_pcc_payment_and_status_agree(self, client, visa_card):
        body = pcc_body(visa_card)

        response = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=body)
        status = await client.get(f"{PCC_URL}/api/pcc/transaction/{body['acquirerOrderId']}/status")

        payment = response.json()
        assert payment["success"] is True
        assert payment["status"] == TransactionStatus.COMPLETED
        assert payment["acquirerOrderId"] == body["acquirerOrderId"]
        assert status.status_code == 200
        assert status.json()["issuerOrderId"] == payment["issuerOrderId"]
        assert status.json()["status"] == TransactionStatus.COMPLETED
        assert status.json()["pan"] == "411111******1111"

    @pytest.mark.e2e
    @pytest.mark.integration
    async def test_second_bank_issues_its_own_cards(self, client, mastercard_card):
        response = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=pcc_body(mastercard_card))

        issuer_order_id = response.json()["issuerOrderId"]
        assert response.json()["status"] == TransactionStatus.COMPLETED
        assert (await client.get(f"{BANK_B_URL}/api/bank/issuer/orders/{issuer_order_id}")).status_code == 200
        assert (await client.get(f"{BANK_A_URL}/api/bank/issuer/orders/{issuer_order_id}")).status_code == 404


class TestPCCEndpoints:

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_replay_over_http_is_identical(self, client, visa_card):
        body = pcc_body(visa_card)

        first = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=body)
        second = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=body)
        listed = (await client.get(f"{PCC_URL}/api/pcc/transactions")).json()

        assert first.json() == second.json()
        assert [t["acquirerOrderId"] for t in listed].count(body["acquirerOrderId"]) == 1

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_unknown_bin_never_reaches_a_bank(self, chain, client, visa_card):
        body = pcc_body(visa_card, pan=UNKNOWN_BIN_PAN)

        response = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=body)

        assert response.json()["status"] == TransactionStatus.FAILED
        assert response.json()["statusMessage"] == "Issuer bank not found for this card"
        assert "bank-a.test" not in chain.router.hosts_called()
        assert "bank-b.test" not in chain.router.hosts_called()

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_wrong_security_code_declined_generically(self, client, visa_card):
        wrong_code = await client.post(
            f"{PCC_URL}/api/pcc/process-payment", json=pcc_body(visa_card, securityCode="000")
        )
        unknown_card = await client.post(
            f"{PCC_URL}/api/pcc/process-payment", json=pcc_body(visa_card, pan="4111000000000000")
        )

        assert wrong_code.json()["status"] == TransactionStatus.FAILED
        assert wrong_code.json()["errorCode"] == "IssuerRejected"
        assert wrong_code.json()["statusMessage"] == unknown_card.json()["statusMessage"]

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_malformed_request_creates_nothing(self, client, visa_card):
        body = pcc_body(visa_card, pan="1234")

        response = await client.post(f"{PCC_URL}/api/pcc/process-payment", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert (await client.get(f"{PCC_URL}/api/pcc/transactions")).json() == []

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_unknown_transaction_status(self, client):
        response = await client.get(f"{PCC_URL}/api/pcc/transaction/missing/status")

        assert response.status_code == 404

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_banks_and_bin_lookup(self, client):
        banks = (await client.get(f"{PCC_URL}/api/pcc/banks")).json()
        known = await client.get(f"{PCC_URL}/api/pcc/bin-lookup/4111")
        unknown = await client.get(f"{PCC_URL}/api/pcc/bin-lookup/9999")

        assert [b["bin"] for b in banks] == ["4111", "5555"]
        assert known.json() == {"bin": "4111", "name": "Bank A", "url": BANK_A_URL}
        assert unknown.status_code == 404

    @pytest.mark.pcc
    @pytest.mark.integration
    async def test_health(self, client):
        response = await client.get(f"{PCC_URL}/api/pcc/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["banksCount"] == 2


class TestBankEndpoints:

    @pytest.mark.acquirer
    @pytest.mark.integration
    async def test_unknown_payment_id(self, client, visa_card):
        response = await client.post(f"{BANK_A_URL}/api/bank/payment/process", json={
            "paymentId": "missing",
            "cardData": card_payload(visa_card),
        })

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    @pytest.mark.acquirer
    @pytest.mark.integration
    async def test_payment_details_for_card_entry_page(self, client, visa_card):
        initiated = (await client.post(f"{BANK_A_URL}/api/bank/payment/initiate", json={
            "merchantId": "merchant-1",
            "amount": 1000,
            "currency": "RSD",
            "merchantOrderId": "order-3",
            "successUrl": "http://shop.test/success",
        })).json()
        url = f"{BANK_A_URL}/api/bank/payment/{initiated['paymentId']}"

        pending = (await client.get(url)).json()
        await client.post(f"{BANK_A_URL}/api/bank/payment/process", json={
            "paymentId": initiated["paymentId"],
            "cardData": card_payload(visa_card),
        })
        settled = (await client.get(url)).json()

        assert pending["merchantId"] == "merchant-1"
        assert Decimal(str(pending["amount"])) == Decimal("1000")
        assert pending["currency"] == "RSD"
        assert pending["status"] == TransactionStatus.PENDING
        assert pending["redirectUrl"] is None
        assert settled["status"] == TransactionStatus.COMPLETED
        assert settled["message"] == "Payment completed successfully"
        assert settled["redirectUrl"] == "http://shop.test/success"

    @pytest.mark.acquirer
    @pytest.mark.integration
    async def test_unknown_payment_details(self, client):
        response = await client.get(f"{BANK_A_URL}/api/bank/payment/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    @pytest.mark.acquirer
    @pytest.mark.integration
    async def test_declined_card_redirects_to_failed(self, client, visa_card):
        initiated = (await client.post(f"{BANK_A_URL}/api/bank/payment/initiate", json={
            "merchantId": "merchant-1",
            "amount": 1000,
            "currency": "RSD",
            "merchantOrderId": "order-1",
            "failedUrl": "http://shop.test/failed",
        })).json()

        response = await client.post(f"{BANK_A_URL}/api/bank/payment/process", json={
            "paymentId": initiated["paymentId"],
            "cardData": card_payload(visa_card, cardHolderName=fake.name() + " Jr"),
        })

        assert response.json()["success"] is False
        assert response.json()["status"] == TransactionStatus.FAILED
        assert response.json()["message"] == "Card not found or invalid"
        assert response.json()["redirectUrl"] == "http://shop.test/failed"

    @pytest.mark.acquirer
    @pytest.mark.integration
    async def test_pcc_status_reconciliation(self, client, visa_card):
        initiated = (await client.post(f"{BANK_A_URL}/api/bank/payment/initiate", json={
            "merchantId": "merchant-1", "amount": 10, "currency": "RSD", "merchantOrderId": "order-2",
        })).json()
        processed = (await client.post(f"{BANK_A_URL}/api/bank/payment/process", json={
            "paymentId": initiated["paymentId"], "cardData": card_payload(visa_card),
        })).json()

        reconciliation = await client.get(
            f"{BANK_A_URL}/api/bank/payment/orders/{processed['acquirerOrderId']}/pcc-status"
        )

        assert reconciliation.json()["reachable"] is True
        assert reconciliation.json()["found"] is True
        assert reconciliation.json()["matchesLocal"] is True

    @pytest.mark.issuer
    @pytest.mark.integration
    async def test_card_registration(self, client):
        response = await client.post(f"{BANK_A_URL}/api/bank/issuer/cards", json={
            "pan": "4111333344445555",
            "cardHolderName": fake.name(),
            "expiryDate": "12/39",
            "securityCode": "111",
            "balance": 100,
        })

        assert response.status_code == 201
        assert response.json()["pan"] == "411133******5555"


class TestPSPEndpoints:

    @pytest.mark.psp
    @pytest.mark.integration
    async def test_payment_methods(self, client):
        response = await client.get(f"{PSP_URL}/api/psp/payment-methods")

        methods = {m["type"]: m["enabled"] for m in response.json()["methods"]}
        assert methods["card"] is True
        assert methods["paypal"] is False

    @pytest.mark.psp
    @pytest.mark.integration
    async def test_unsupported_payment_type(self, client):
        response = await client.post(f"{PSP_URL}/api/psp/payments", json={
            "webShopClientId": "shop-1",
            "paymentType": "paypal",
            "amount": 10,
            "merchantOrderId": str(uuid.uuid4()),
        })

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
