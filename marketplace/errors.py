"""Translation of data-layer ``ValueError`` codes into HTTP errors.

CRUD functions raise ``ValueError("<code>")`` or
``ValueError("<code>:<detail>:...")``. Routers catch them and call
:func:`http_error` so that every endpoint answers with the same status and
message for the same failure.
"""
from fastapi import HTTPException, status

ERRORS = {
    # 404
    "user_not_found": (status.HTTP_404_NOT_FOUND, "User not found"),
    "producer_not_found": (status.HTTP_404_NOT_FOUND, "Producer profile not found"),
    "product_not_found": (status.HTTP_404_NOT_FOUND, "Product not found"),
    "order_not_found": (status.HTTP_404_NOT_FOUND, "Order not found"),
    "order_item_not_found": (status.HTTP_404_NOT_FOUND, "Order item not found"),
    "cart_not_found": (status.HTTP_404_NOT_FOUND, "No active cart found for this user"),
    "slot_not_found": (status.HTTP_404_NOT_FOUND, "Delivery slot not found"),
    "booking_not_found": (status.HTTP_404_NOT_FOUND, "Booking not found"),
    "invoice_not_found": (status.HTTP_404_NOT_FOUND, "Invoice not found"),
    "notification_not_found": (status.HTTP_404_NOT_FOUND, "Notification not found"),
    "wallet_not_found": (status.HTTP_404_NOT_FOUND, "Wallet not found"),
    "withdrawal_not_found": (status.HTTP_404_NOT_FOUND, "Withdrawal not found"),
    "category_not_found": (status.HTTP_404_NOT_FOUND, "Category not found"),
    "payment_intent_not_found": (status.HTTP_400_BAD_REQUEST, "Stripe PaymentIntent not found"),
    # 403
    "forbidden": (status.HTTP_403_FORBIDDEN, "Not allowed"),
    "not_owner": (status.HTTP_403_FORBIDDEN, "This resource does not belong to you"),
    "account_disabled": (status.HTTP_403_FORBIDDEN, "This account is disabled"),
    # 409
    "invoice_exists": (status.HTTP_409_CONFLICT, "An invoice already exists for this order"),
    "product_in_use": (status.HTTP_409_CONFLICT, "Product is referenced by existing orders"),
    "user_has_orders": (status.HTTP_409_CONFLICT, "User has orders and cannot be deleted"),
    # 400
    "duplicate_email": (status.HTTP_400_BAD_REQUEST, "This email is already registered"),
    "insufficient_stock": (status.HTTP_400_BAD_REQUEST, "Insufficient stock"),
    "insufficient_capacity": (status.HTTP_400_BAD_REQUEST, "Insufficient capacity for this delivery slot"),
    "insufficient_balance": (status.HTTP_400_BAD_REQUEST, "Insufficient available balance"),
    "product_unavailable": (status.HTTP_400_BAD_REQUEST, "Product is not available"),
    "below_min_quantity": (status.HTTP_400_BAD_REQUEST, "Quantity is below the minimum order quantity"),
    "stock_not_configured": (status.HTTP_400_BAD_REQUEST, "Stock is not configured for this product"),
    "slot_unavailable": (status.HTTP_400_BAD_REQUEST, "Delivery slot is not available"),
    "slot_in_past": (status.HTTP_400_BAD_REQUEST, "Cannot create a delivery slot in the past"),
    "slot_exists_for_day": (status.HTTP_400_BAD_REQUEST, "A delivery slot already exists for this product on this day"),
    "slot_has_bookings": (status.HTTP_400_BAD_REQUEST, "Cannot delete a delivery slot with bookings"),
    "capacity_exceeds_stock": (status.HTTP_400_BAD_REQUEST, "Capacity cannot exceed available stock"),
    "capacity_below_reserved": (status.HTTP_400_BAD_REQUEST, "Capacity cannot be lower than existing reservations"),
    "active_bookings": (status.HTTP_400_BAD_REQUEST, "Some delivery slots have active bookings; only admins can force cleanup"),
    "booking_confirmed": (status.HTTP_400_BAD_REQUEST, "Cannot delete a confirmed booking"),
    "order_not_editable": (status.HTTP_400_BAD_REQUEST, "This order can no longer be modified"),
    "order_empty": (status.HTTP_400_BAD_REQUEST, "Your cart is empty"),
    "order_not_cancellable": (status.HTTP_400_BAD_REQUEST, "Only pending orders can be cancelled"),
    "order_cancelled": (status.HTTP_400_BAD_REQUEST, "A cancelled order cannot change status"),
    "deferred_not_accepted": (status.HTTP_400_BAD_REQUEST, "A product does not accept deferred (30 days) payment"),
    "invalid_transition": (status.HTTP_400_BAD_REQUEST, "Invalid status transition"),
    "invalid_status": (status.HTTP_400_BAD_REQUEST, "Invalid status"),
    "due_date_in_past": (status.HTTP_400_BAD_REQUEST, "Due date must be in the future"),
    "invoice_not_payable": (status.HTTP_400_BAD_REQUEST, "This invoice cannot be paid"),
    "invoice_already_paid": (status.HTTP_400_BAD_REQUEST, "Invoice already paid"),
    "invalid_amount": (status.HTTP_400_BAD_REQUEST, "Invalid invoice amount"),
    "amount_too_low": (status.HTTP_400_BAD_REQUEST, "Minimum amount is 0.50"),
    "amount_too_high": (status.HTTP_400_BAD_REQUEST, "Amount too high"),
    "payment_not_succeeded": (status.HTTP_400_BAD_REQUEST, "Stripe payment not confirmed"),
    "payment_amount_mismatch": (status.HTTP_400_BAD_REQUEST, "Payment amount does not match the invoice"),
    "payment_invoice_mismatch": (status.HTTP_400_BAD_REQUEST, "Payment does not match this invoice"),
    "payment_user_mismatch": (status.HTTP_400_BAD_REQUEST, "Payment not authorized for this user"),
    "bank_details_missing": (status.HTTP_400_BAD_REQUEST, "Bank details (IBAN) are missing from your producer profile"),
    "withdrawal_processed": (status.HTTP_400_BAD_REQUEST, "Withdrawal already processed"),
    "cannot_delete_self": (status.HTTP_400_BAD_REQUEST, "Cannot delete your own account"),
    "category_exists": (status.HTTP_400_BAD_REQUEST, "A category with this name already exists"),
    "category_not_empty": (status.HTTP_400_BAD_REQUEST, "Category still has products; move or delete them first"),
    "name_required": (status.HTTP_400_BAD_REQUEST, "Name is required"),
    "invalid_quantity": (status.HTTP_400_BAD_REQUEST, "Quantity must be positive"),
    "invalid_capacity": (status.HTTP_400_BAD_REQUEST, "Capacity must be between 0.1 and 10000"),
    "booking_cancelled": (status.HTTP_400_BAD_REQUEST, "This booking is cancelled"),
    "payment_intent_required": (status.HTTP_400_BAD_REQUEST, "stripe_payment_intent_id is required for card payments"),
    "invalid_payload": (status.HTTP_400_BAD_REQUEST, "Invalid payload"),
    "invalid_signature": (status.HTTP_400_BAD_REQUEST, "Invalid signature"),
    # 5xx
    "stripe_not_configured": (status.HTTP_500_INTERNAL_SERVER_ERROR, "Stripe is not configured"),
    "stripe_error": (status.HTTP_502_BAD_GATEWAY, "Payment provider error"),
}


def http_error(exc: ValueError) -> HTTPException:
    """Build the HTTPException matching a data-layer ``ValueError``.

    ``insufficient_stock:<available>:<requested>`` keeps its numbers in the
    detail so clients can display them.
    """
    msg = str(exc)
    code, _, extra = msg.partition(":")
    status_code, message = ERRORS.get(code, (status.HTTP_400_BAD_REQUEST, msg))
    detail = {"error": code, "message": message}
    if code in ERRORS and extra:
        parts = extra.split(":")
        if code in ("insufficient_stock", "insufficient_capacity", "insufficient_balance") and len(parts) == 2:
            detail["available"] = parts[0]
            detail["requested"] = parts[1]
        elif code == "invalid_transition" and len(parts) == 2:
            detail["message"] = f"Invalid status transition: {parts[0]} -> {parts[1]}"
        elif code == "payment_not_succeeded":
            detail["message"] = f"Stripe payment not confirmed. Status: {extra}"
        else:
            detail["message"] = f"{message} ({extra})"
    return HTTPException(status_code=status_code, detail=detail)
