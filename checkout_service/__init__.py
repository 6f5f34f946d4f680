"""Checkout Service — cart to order saga with inventory reservation."""
