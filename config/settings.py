"""
config/settings.py
Central configuration — reads from environment variables and .env file.
"""
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings:

    def __init__(self):
        self._load()

    def _load(self):
        import os
        env_file = BASE_DIR / ".env"
        if env_file.exists():
            for line in env_file.read_text().splitlines():
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, val = line.partition("=")
                    os.environ.setdefault(key.strip(), val.strip())

        self.sqlite_db_path = os.environ.get(
            "PARKING_DB_PATH", str(BASE_DIR / "data" / "parking.db")
        )

        # All lots share one campus wall clock
        self.campus_timezone = os.environ.get("CAMPUS_TIMEZONE", "America/New_York")

        # Metered billing window [start, end) in local hours
        self.billable_window_start_hour = int(os.environ.get("BILLABLE_WINDOW_START", "7"))
        self.billable_window_end_hour   = int(os.environ.get("BILLABLE_WINDOW_END", "19"))
        self.weekend_days = (5, 6)   # datetime.weekday(): Saturday, Sunday

        # "start-day" | "per-day"
        self.billing_day_mode = os.environ.get("BILLING_DAY_MODE", "start-day")

        self.extension_surcharge      = float(os.environ.get("EXTENSION_SURCHARGE", "2.50"))
        self.permit_evening_hour      = int(os.environ.get("PERMIT_EVENING_HOUR", "16"))
        self.max_extension_hours      = float(os.environ.get("MAX_EXTENSION_HOURS", "24"))

        self.full_refund_notice_hours = float(os.environ.get("FULL_REFUND_NOTICE_HOURS", "24"))
        self.late_cancel_policy       = os.environ.get("LATE_CANCEL_POLICY", "no-refund")
        self.late_cancel_refund_pct   = float(os.environ.get("LATE_CANCEL_REFUND_PCT", "0"))

        self.payment_timeout_seconds  = float(os.environ.get("PAYMENT_TIMEOUT_SECONDS", "15"))
        # A claim older than this is considered abandoned and may be taken over
        self.claim_ttl_seconds        = float(os.environ.get("CLAIM_TTL_SECONDS", "120"))

        self.metrics_port = int(os.environ.get("METRICS_PORT", "9090"))
        self.log_level    = os.environ.get("LOG_LEVEL", "INFO")


settings = Settings()
