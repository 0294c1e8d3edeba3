import json

import pytest

from storefront.checkout import build_metadata, checkout, normalize_payer, parse_card
from storefront.errors import (
    CheckoutInProgress,
    GatewayError,
    GatewayValidationError,
    InvalidProduct,
    MissingPaymentData,
)
from storefront.models import Customer, Order, OrderItem
from storefront.schemas import CardData, CheckoutRequest, CustomerData

PIX_DATA = {
    "qr_code": "00020126...",
    "qr_code_url": "https://qr.example/abc.png",
    "expires_at": "2030-01-01T12:00:00Z",
}


def _request(**overrides):
    payload = {
        "product": {"id": "course", "price": 10000},
        "customer": {
            "name": "Maria Silva",
            "email": "maria@example.com",
            "document": "123.456.789-09",
            "phone": "(11) 99999-8888",
        },
        "paymentMethod": "credit_card",
        "cardData": {
            "cardNumber": "4111 1111 1111 1111",
            "cardHolder": "MARIA SILVA",
            "cardExpiry": "12/30",
            "cardCvv": "123",
        },
        "installments": 2,
    }
    payload.update(overrides)
    return CheckoutRequest.model_validate(payload)


def _orders(db):
    db.expire_all()
    return db.query(Order).all()


def test_card_checkout_creates_order(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch(
        "storefront.gateway.create_card_payment",
        return_value=gateway_transaction(id="or_card", status="paid", charge_id="ch_card"),
    )

    result = checkout(db, _request())

    assert result.status == "paid"
    assert result.qr_code is None
    assert result.is_duplicate is False

    kwargs = charge.call_args.kwargs
    assert kwargs["amount"] == 10000
    assert kwargs["installments"] == 2
    assert kwargs["split"] is None
    assert kwargs["code"] == result.order_id
    assert kwargs["card"].number == "4111111111111111"
    assert kwargs["card"].exp_year == 2030
    assert kwargs["payer"].document == "12345678909"

    [order] = _orders(db)
    assert order.id == result.order_id
    assert order.status == "paid"
    assert order.external_transaction_id == "or_card"
    assert order.external_charge_id == "ch_card"
    assert order.installments == 2
    assert order.gateway_response["id"] == "or_card"
    assert [(item.product_id, item.price, item.quantity) for item in order.items] == [("course", 10000, 1)]


def test_pix_checkout_returns_qr_code(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch(
        "storefront.gateway.create_pix_payment",
        return_value=gateway_transaction(id="or_pix", status="pending", pix=PIX_DATA),
    )
    card_charge = mocker.patch("storefront.gateway.create_card_payment")

    result = checkout(db, _request(paymentMethod="pix", cardData=None))

    assert result.status == "pending"
    assert result.transaction_id == "or_pix"
    assert result.qr_code == PIX_DATA["qr_code"]
    assert result.qr_code_url == PIX_DATA["qr_code_url"]
    assert result.expires_at == PIX_DATA["expires_at"]
    assert charge.call_args.kwargs["expires_in"] == 3600
    card_charge.assert_not_called()

    [order] = _orders(db)
    assert order.installments is None
    assert order.payment_method == "pix"


def test_price_mismatch_never_reaches_gateway(db, catalog, mocker):
    charge = mocker.patch("storefront.gateway.create_card_payment")

    with pytest.raises(InvalidProduct):
        checkout(db, _request(product={"id": "course", "price": 1}))

    charge.assert_not_called()
    assert _orders(db) == []


def test_card_checkout_without_card_data(db, catalog, mocker):
    charge = mocker.patch("storefront.gateway.create_card_payment")

    with pytest.raises(MissingPaymentData):
        checkout(db, _request(cardData=None))

    charge.assert_not_called()
    assert _orders(db) == []


def test_affiliate_split_is_sent_and_recorded(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())

    checkout(db, _request(affiliateRef="rp_affiliate"))

    split = charge.call_args.kwargs["split"]
    assert [(rule["recipient_id"], rule["amount"]) for rule in split] == [("rp_platform", 80), ("rp_affiliate", 20)]
    assert charge.call_args.kwargs["metadata"]["affiliate_id"] == "rp_affiliate"

    [order] = _orders(db)
    assert order.affiliate_id == "aff-1"
    assert order.split_amount == 2000


def test_configured_split_ignores_affiliate(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())

    checkout(db, _request(product={"id": "bundle", "price": 30000}, affiliateRef="rp_affiliate"))

    split = charge.call_args.kwargs["split"]
    assert [rule["recipient_id"] for rule in split] == ["rp_platform", "rp_author", "rp_mentor"]
    [order] = _orders(db)
    assert order.affiliate_id is None
    assert order.split_amount is None


def test_addons_are_recorded_as_items(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())

    checkout(db, _request(selectedBumps=["bonus"], totalAmount=12500))

    assert charge.call_args.kwargs["amount"] == 12500
    metadata = charge.call_args.kwargs["metadata"]
    assert metadata["has_order_bumps"] is True
    assert json.loads(metadata["order_bumps"]) == {"ids": ["bonus"], "names": ["Bonus Workbook"]}

    [order] = _orders(db)
    assert order.amount == 12500
    assert sorted((item.product_id, item.price) for item in order.items) == [("bonus", 2500), ("course", 10000)]


def test_unavailable_addon_rejects_checkout(db, catalog, mocker):
    charge = mocker.patch("storefront.gateway.create_card_payment")

    with pytest.raises(InvalidProduct):
        checkout(db, _request(selectedBumps=["retired"]))

    charge.assert_not_called()


def test_coupon_is_linked_to_order(db, catalog, mocker, gateway_transaction):
    mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())

    checkout(db, _request(coupon={"code": "welcome10", "discountPercentage": 10}, totalAmount=9000))

    [order] = _orders(db)
    assert order.coupon_id == "coupon-1"
    assert order.amount == 9000


def test_inapplicable_coupon_does_not_block_checkout(db, catalog, mocker, gateway_transaction):
    mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())

    checkout(db, _request(coupon={"code": "UNKNOWN"}))

    [order] = _orders(db)
    assert order.coupon_id is None


def test_gateway_failure_leaves_no_order(db, catalog, mocker):
    mocker.patch("storefront.gateway.create_card_payment", side_effect=GatewayError("Card declined"))

    with pytest.raises(GatewayError):
        checkout(db, _request())

    assert _orders(db) == []
    assert db.query(OrderItem).count() == 0


def test_gateway_validation_error_propagates(db, catalog, mocker):
    mocker.patch(
        "storefront.gateway.create_card_payment",
        side_effect=GatewayValidationError("Invalid card", code="INVALID_CARD_NUMBER", details=["card.number: invalid"]),
    )

    with pytest.raises(GatewayValidationError) as excinfo:
        checkout(db, _request())

    assert excinfo.value.status_code == 400
    assert _orders(db) == []


def test_returning_customer_is_updated_not_duplicated(db, catalog, mocker, gateway_transaction):
    mocker.patch(
        "storefront.gateway.create_card_payment",
        side_effect=[gateway_transaction(id="or_a"), gateway_transaction(id="or_b", charge_id="ch_b")],
    )

    checkout(db, _request())
    second = _request()
    second.customer.email = "maria.new@example.com"
    checkout(db, second)

    db.expire_all()
    customers = db.query(Customer).all()
    assert len(customers) == 1
    assert customers[0].email == "maria.new@example.com"
    assert {order.customer_id for order in _orders(db)} == {customers[0].id}


def test_failed_checkout_keeps_customer_contact_data(db, catalog, mocker):
    db.add(Customer(document="12345678909", name="Original", email="original@example.com", phone="11911112222"))
    db.commit()
    mocker.patch("storefront.gateway.create_card_payment", side_effect=GatewayError("Card declined"))

    request = _request()
    request.customer.name = "Someone Else"
    request.customer.email = "someone@example.com"
    with pytest.raises(GatewayError):
        checkout(db, request)

    db.expire_all()
    [customer] = db.query(Customer).all()
    assert customer.name == "Original"
    assert customer.email == "original@example.com"
    assert customer.phone == "11911112222"
    assert _orders(db) == []


def test_new_customer_is_created_for_the_draft(db, catalog, mocker):
    mocker.patch("storefront.gateway.create_card_payment", side_effect=GatewayError("Card declined"))

    with pytest.raises(GatewayError):
        checkout(db, _request())

    db.expire_all()
    [customer] = db.query(Customer).all()
    assert customer.document == "12345678909"
    assert customer.name == "Maria Silva"


def test_coupon_discount_drift_is_logged(db, catalog, mocker, gateway_transaction):
    mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())
    logger = mocker.patch("storefront.checkout.logger")

    checkout(db, _request(coupon={"code": "WELCOME10", "discountPercentage": 50}, totalAmount=5000))

    logger.warning.assert_called_once_with(
        "coupon_discount_mismatch", code="WELCOME10", submitted_discount=50, discount=10
    )
    [order] = _orders(db)
    assert order.coupon_id == "coupon-1"


def test_matching_coupon_discount_is_not_flagged(db, catalog, mocker, gateway_transaction):
    mocker.patch("storefront.gateway.create_card_payment", return_value=gateway_transaction())
    logger = mocker.patch("storefront.checkout.logger")

    checkout(db, _request(coupon={"code": "WELCOME10", "discountPercentage": 10}, totalAmount=9000))

    logger.warning.assert_not_called()


def test_repeated_checkout_id_replays_first_order(db, catalog, mocker, gateway_transaction):
    charge = mocker.patch(
        "storefront.gateway.create_pix_payment",
        return_value=gateway_transaction(id="or_pix", status="pending", pix=PIX_DATA),
    )

    first = checkout(db, _request(paymentMethod="pix", cardData=None, checkoutId="chk-1"))
    second = checkout(db, _request(paymentMethod="pix", cardData=None, checkoutId="chk-1"))

    assert charge.call_count == 1
    assert second.is_duplicate is True
    assert second.order_id == first.order_id
    assert second.qr_code == PIX_DATA["qr_code"]
    assert len(_orders(db)) == 1


def test_checkout_id_still_in_flight(db, catalog, make_order, mocker):
    make_order(status="creating", external_transaction_id=None, checkout_id="chk-busy")
    charge = mocker.patch("storefront.gateway.create_card_payment")

    with pytest.raises(CheckoutInProgress) as excinfo:
        checkout(db, _request(checkoutId="chk-busy"))

    assert excinfo.value.status_code == 409
    charge.assert_not_called()


def test_webhook_arriving_before_finalize_is_kept(db, catalog, mocker, gateway_transaction):
    def pay_first(**kwargs):
        # the paid notification lands while the gateway call is still returning
        db.query(Order).filter_by(id=kwargs["code"]).update({"status": "paid"})
        db.commit()
        return gateway_transaction(id="or_card", status="pending")

    mocker.patch("storefront.gateway.create_card_payment", side_effect=pay_first)

    result = checkout(db, _request())

    assert result.status == "paid"
    [order] = _orders(db)
    assert order.status == "paid"
    assert order.external_transaction_id == "or_card"


def test_early_pending_webhook_does_not_mask_gateway_status(db, catalog, mocker, gateway_transaction):
    def pending_first(**kwargs):
        db.query(Order).filter_by(id=kwargs["code"]).update({"status": "pending"})
        db.commit()
        return gateway_transaction(id="or_card", status="paid")

    mocker.patch("storefront.gateway.create_card_payment", side_effect=pending_first)

    result = checkout(db, _request())

    assert result.status == "paid"
    [order] = _orders(db)
    assert order.status == "paid"


def test_normalize_payer_splits_phone():
    payer = normalize_payer(CustomerData(
        name="Maria", email="maria@example.com", document="123.456.789-09", phone="(11) 99999-8888"
    ))

    assert payer.document == "12345678909"
    assert payer.phone.area_code == "11"
    assert payer.phone.number == "999998888"
    assert payer.phone.country_code == "55"


@pytest.mark.parametrize("expiry, year", [("12/30", 2030), ("01/2031", 2031)])
def test_parse_card_expiry(expiry, year):
    card = parse_card(CardData(card_number="4111", card_holder="M", card_expiry=expiry, card_cvv="1"))
    assert card.exp_year == year


@pytest.mark.parametrize("card_data", [
    None,
    CardData(card_number="4111", card_holder="M", card_expiry="12/30"),
    CardData(card_number="4111", card_holder="M", card_expiry="1230", card_cvv="1"),
])
def test_parse_card_rejects_incomplete_data(card_data):
    with pytest.raises(MissingPaymentData):
        parse_card(card_data)


def test_build_metadata_without_addons(catalog):
    metadata = build_metadata(catalog["course"], None, [])

    assert metadata == {
        "product_id": "course",
        "product_name": "Trading Course",
        "product_type": "educational",
        "affiliate_id": None,
        "order_bumps": None,
        "has_order_bumps": False,
    }
