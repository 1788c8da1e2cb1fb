import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored beside the code as bookings.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "bookings.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Document store backend: sql, memory or firestore
    DOCUMENT_STORE = os.getenv("DOCUMENT_STORE", "sql")

    # Firestore REST backend
    FIRESTORE_PROJECT_ID = os.getenv("FIRESTORE_PROJECT_ID")
    FIRESTORE_DATABASE = os.getenv("FIRESTORE_DATABASE", "(default)")
    FIRESTORE_AUTH_TOKEN = os.getenv("FIRESTORE_AUTH_TOKEN")
    FIRESTORE_TIMEOUT_SECONDS = float(os.getenv("FIRESTORE_TIMEOUT_SECONDS", "10"))

    # Booking dates are normalised to midnight in this zone
    BOOKING_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "UTC")

    # Fixed visiting charge recorded as totalPrice when no price is given
    VISITING_CHARGE = int(os.getenv("VISITING_CHARGE", "99"))

    # Start / completion verification codes
    CODE_LENGTH = int(os.getenv("CODE_LENGTH", "6"))
    COMPLETION_CODE_TTL_SECONDS = int(os.getenv("COMPLETION_CODE_TTL_SECONDS", str(24 * 60 * 60)))
    COMPLETION_CODE_MAX_ATTEMPTS = int(os.getenv("COMPLETION_CODE_MAX_ATTEMPTS", "3"))

    # Bookings created before start codes existed have none on record.
    # false: let them start without a code, true: refuse to start them.
    REQUIRE_START_CODE = os.getenv("REQUIRE_START_CODE", "false").lower() == "true"

    # Notification intents
    NOTIFICATIONS_ASYNC = os.getenv("NOTIFICATIONS_ASYNC", "true").lower() == "true"
    NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "2"))

    # Stripe webhook (records gateway payment outcomes)
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Max rows returned by audit log listings
    AUDIT_LOG_LIMIT = 200

    # Basic app settings
    DEBUG = False
