"""HTTP surface: payment intake, Stripe webhook, status endpoints."""
