"""
Service Commander — Configuration
═══════════════════════════════════════════════════
All settings in one place. Every value can be overridden via environment
variables; components take these as constructor defaults.
"""

import os


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


# ── Labels & Naming ───────────────────────────────────────

LABEL_PREFIX = os.environ.get("COMMANDER_LABEL_PREFIX", "commander")
CONTAINER_PREFIX = os.environ.get("COMMANDER_CONTAINER_PREFIX", "commander")

# Empty = auto-detect the host's private IPv4 address
PUBLIC_HOST = os.environ.get("COMMANDER_PUBLIC_HOST", "")

# ── Catalog ───────────────────────────────────────────────

# Optional YAML file with extra service descriptors (merged over built-ins)
CATALOG_PATH = os.environ.get("COMMANDER_CATALOG_PATH", "")

# ── Runtime ───────────────────────────────────────────────

CONTAINER_STOP_TIMEOUT = int(os.environ.get("CONTAINER_STOP_TIMEOUT", "10"))
CPU_PERIOD = 100000  # 100ms, CPU quota is expressed against this period
RESTART_POLICY = "unless-stopped"

# Hold one process-wide lock across "observe ports → bind"
SERIALIZE_PORT_ALLOCATION = _env_bool("COMMANDER_SERIALIZE_PORTS", "true")
MAX_PORT = 65535

# ── Health Monitoring ─────────────────────────────────────

HEALTH_HISTORY_LIMIT = int(os.environ.get("HEALTH_HISTORY_LIMIT", "1000"))
DEFAULT_MONITOR_INTERVAL_MS = int(os.environ.get("DEFAULT_MONITOR_INTERVAL_MS", "30000"))
MIN_MONITOR_INTERVAL_MS = 1000

CPU_WARNING_PERCENT = float(os.environ.get("CPU_WARNING_PERCENT", "80"))
CPU_CRITICAL_PERCENT = float(os.environ.get("CPU_CRITICAL_PERCENT", "95"))
MEMORY_WARNING_PERCENT = float(os.environ.get("MEMORY_WARNING_PERCENT", "80"))
MEMORY_CRITICAL_PERCENT = float(os.environ.get("MEMORY_CRITICAL_PERCENT", "95"))
RESTART_WARNING_COUNT = int(os.environ.get("RESTART_WARNING_COUNT", "5"))

# ── Backups ───────────────────────────────────────────────

BACKUP_ROOT = os.environ.get("BACKUP_ROOT", "/app/data/backups")
BACKUP_MAX_AGE_DAYS = int(os.environ.get("BACKUP_MAX_AGE_DAYS", "30"))
BACKUP_QUOTA_BYTES = int(os.environ.get("BACKUP_QUOTA_BYTES", str(10 * 1024 ** 3)))

# ── API Server ────────────────────────────────────────────

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "5000"))
ALLOW_ORIGINS = [o.strip() for o in os.environ.get("ALLOW_ORIGINS", "*").split(",") if o.strip()]

# ── Logging ───────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
