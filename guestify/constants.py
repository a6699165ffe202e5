"""Centralized application constants — single source of truth for hardcoded values."""

# --- Stripe webhooks ---
STRIPE_SIGNATURE_HEADER = "stripe-signature"
STRIPE_SIGNATURE_TOLERANCE = 300  # seconds

# --- Trial math ---
SECONDS_PER_DAY = 86400

# --- Auth ---
BEARER_PREFIX = "Bearer "
