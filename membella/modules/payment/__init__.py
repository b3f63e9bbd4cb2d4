"""Payment module.

Checkout against the payment gateway, the payment status state machine,
webhook reconciliation and status polling.
"""
