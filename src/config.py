import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    ENVIRONMENT = os.getenv("ENVIRONMENT", "dev").lower()

    # Database Paths (Dynamic by environment)
    @classmethod
    def get_db_path(cls) -> str:
        base_dir = f"data/db/{cls.ENVIRONMENT}"
        os.makedirs(base_dir, exist_ok=True)
        return os.path.join(base_dir, f"billing_{cls.ENVIRONMENT}.sqlite")

    @classmethod
    def recompute_db_path(cls):
        cls.DB_NAME = cls.get_db_path()

    # Fiscal document parameters
    FISCAL_REGION_CODE = os.getenv("FISCAL_REGION_CODE", "35")  # SP
    FISCAL_DOCUMENT_MODEL = "55"
    DEFAULT_SERIES = os.getenv("DEFAULT_SERIES", "1")
    DEFAULT_TAX_RATE = float(os.getenv("DEFAULT_TAX_RATE", "6.0"))

    # Fiscal authority gateway
    FISCAL_GATEWAY_URL = os.getenv("FISCAL_GATEWAY_URL")
    FISCAL_GATEWAY_TOKEN = os.getenv("FISCAL_GATEWAY_TOKEN")

    # Scheduled retry job
    MAX_FAILURE_ATTEMPTS = int(os.getenv("MAX_FAILURE_ATTEMPTS", "5"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Output Paths
    REPORTS_DIR = "data/reports"

    @classmethod
    def check_and_create_dirs(cls):
        """Ensures all environment-specific and output directories exist."""
        cls.recompute_db_path()
        dirs = [
            os.path.dirname(cls.DB_NAME),
            cls.REPORTS_DIR,
        ]
        for d in dirs:
            os.makedirs(d, exist_ok=True)

    @classmethod
    def get_schedule_time(cls) -> str:
        """Returns the time to run the daily job (HH:MM:SS format)."""
        env_time = os.getenv("SCHEDULE_TIME")
        if env_time:
            return env_time

        if cls.is_prd():
            return "00:00:00"

        # For non-prd (dev/hml), default to now + startup delay for testing
        from datetime import datetime, timedelta

        target_time = datetime.now() + timedelta(seconds=cls.get_startup_delay())
        return target_time.strftime("%H:%M:%S")

    @classmethod
    def get_startup_delay(cls) -> int:
        """Returns delay in seconds before starting the job."""
        return 10 if not cls.is_prd() else 0

    @classmethod
    def is_prd(cls) -> bool:
        return cls.ENVIRONMENT == "prd"

    @classmethod
    def is_dev(cls) -> bool:
        return cls.ENVIRONMENT == "dev"


# Initialize paths on module load
Config.recompute_db_path()
Config.check_and_create_dirs()
