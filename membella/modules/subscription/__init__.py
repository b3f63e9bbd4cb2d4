"""Subscription module: activation on payment and member subscription views."""
