"""
Core modules for Shipment Payments.

This package contains quoting, the split payment state machine,
webhook reconciliation and refund eligibility.
"""
