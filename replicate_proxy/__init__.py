"""Server-side proxy for Replicate predictions and Stripe checkout sessions."""

__version__ = "0.1.0"
