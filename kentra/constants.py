"""Centralized application constants — single source of truth for hardcoded values."""

# --- Session ---
COOKIE_NAME = "kentra_session"

# --- Plans ---
TRIAL_PLAN_NAME = "agente_trial"

# --- Listing statuses (properties.status) ---
LISTING_ACTIVE = "activa"
LISTING_PAUSED = "pausada"
LISTING_PENDING = "pendiente_aprobacion"

# --- Rate limiting: name -> (max_requests, window_ms) ---
MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
RATE_LIMITS = {
    "search": (100, MINUTE_MS),
    "create_property": (10, MINUTE_MS),
    "send_message": (30, MINUTE_MS),
    "auth": (5, MINUTE_MS),
    "phone_verification": (3, HOUR_MS),
    "checkout": (10, HOUR_MS),
    "general": (60, MINUTE_MS),
}
RATE_LIMIT_NAMESPACE = "ratelimit"

# --- Stripe ---
# Fragment of the InvalidRequestError message Stripe returns when updating a
# subscription that is already fully canceled.
STRIPE_ALREADY_CANCELED_FRAGMENT = "canceled subscription"

# --- Worker ---
ARQ_MAX_JOBS = 10
ARQ_JOB_TIMEOUT = 900  # seconds (15 min)

# --- Notifications ---
NOTIFICATION_JOB = "send_subscription_notification"
DATE_LOCALE_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)
