"""
Gateway webhook payload builders, shaped like the real deliveries.
"""


def stripe_intent_event(event_type, intent_id="pi_123", charge_id="ch_123", transaction_id=None,
                        event_id="evt_1", amount=5000, fee=None, error=None, cancellation_reason=None):
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
        "currency": "usd",
        "latest_charge": charge_id,
        "metadata": {"transaction_id": transaction_id} if transaction_id else {},
        "payment_method_types": ["card"],
        "receipt_email": "buyer@example.com",
        "cancellation_reason": cancellation_reason,
    }
    if fee is not None:
        obj["application_fee_amount"] = fee
    if error:
        obj["last_payment_error"] = {"code": "card_declined", "message": error}
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1705314225,
        "data": {"object": obj},
    }


def stripe_charge_refunded(charge_id="ch_123", intent_id="pi_123", refund_id="re_1", amount=3000,
                           event_id="evt_refund_1", with_refunds=True):
    obj = {
        "id": charge_id,
        "object": "charge",
        "payment_intent": intent_id,
        "currency": "usd",
        "metadata": {},
    }
    if with_refunds:
        obj["refunds"] = {"data": [{"id": refund_id, "amount": amount, "reason": "requested_by_customer"}]}
    return {
        "id": event_id,
        "object": "event",
        "type": "charge.refunded",
        "created": 1705314825,
        "data": {"object": obj},
    }


def stripe_dispute(charge_id="ch_123", intent_id="pi_123", event_id="evt_dispute_1"):
    return {
        "id": event_id,
        "type": "charge.dispute.created",
        "created": 1705315000,
        "data": {"object": {
            "id": "dp_1",
            "charge": charge_id,
            "payment_intent": intent_id,
            "status": "needs_response",
            "reason": "fraudulent",
            "amount": 5000,
        }},
    }


def paypal_capture_event(event_type, capture_id="CAP1", order_id="ORDER1", custom_id=None,
                         event_id="WH-1", value="20.00", fee=None, status="COMPLETED", reason=None):
    resource = {
        "id": capture_id,
        "status": status,
        "amount": {"currency_code": "USD", "value": value},
        "custom_id": custom_id,
        "supplementary_data": {"related_ids": {"order_id": order_id}},
        "create_time": "2024-01-15T10:23:45Z",
    }
    if fee is not None:
        resource["seller_receivable_breakdown"] = {"paypal_fee": {"currency_code": "USD", "value": fee}}
    if reason:
        resource["status_details"] = {"reason": reason}
    return {"id": event_id, "event_type": event_type, "resource": resource}


def paypal_refund_event(refund_id="REF1", capture_id="CAP1", value="5.00", event_id="WH-R1", custom_id=None):
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {
            "id": refund_id,
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": value},
            "custom_id": custom_id,
            "create_time": "2024-01-15T11:00:00Z",
            "links": [
                {"rel": "self", "href": f"https://api.paypal.com/v2/payments/refunds/{refund_id}"},
                {"rel": "up", "href": f"https://api.paypal.com/v2/payments/captures/{capture_id}"},
            ],
        },
    }


def paypal_approval_reversed(order_id="ORDER1", event_id="WH-C1"):
    return {
        "id": event_id,
        "event_type": "CHECKOUT.PAYMENT-APPROVAL.REVERSED",
        "resource": {"order_id": order_id},
    }


def braintree_notification(kind="transaction_settled", braintree_id="bt_1", order_id=None,
                           amount="25.00", fee=None, status="settled"):
    return {
        "kind": kind,
        "timestamp": "2024-01-15T10:23:45+00:00",
        "transaction": {
            "id": braintree_id,
            "order_id": order_id,
            "status": status,
            "amount": amount,
            "currency_iso_code": "USD",
            "service_fee_amount": fee,
            "processor_response_text": "Approved" if kind == "transaction_settled" else "Declined",
        },
    }
