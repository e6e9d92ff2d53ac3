"""OTW order creation, Stripe Checkout and payment reconciliation."""

__version__ = "1.0.0"
