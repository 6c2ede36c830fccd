import os

from dotenv import load_dotenv

load_dotenv()

# FHIR server (SMART sandbox by default, Synthea data)
FHIR_BASE_URL = os.getenv(
    "FHIR_BASE_URL",
    "https://launch.smarthealthit.org/v/r4/fhir",
)
FHIR_TIMEOUT = float(os.getenv("FHIR_TIMEOUT", "45"))
FHIR_WRITEBACK_ENABLED = os.getenv("FHIR_WRITEBACK_ENABLED", "false").lower() in ("1", "true", "yes", "on")

DATABASE_PATH = os.getenv("DATABASE_PATH", "edcare.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))

# Risk / adherence tuning
RISK_CONVENTION = os.getenv("RISK_CONVENTION", "dual_window")
OVERDUE_GRACE_MINUTES = int(os.getenv("OVERDUE_GRACE_MINUTES", "30"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
