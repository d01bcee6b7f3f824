import os
from dotenv import load_dotenv
from geonudge.logger import logger
load_dotenv()

__all__ = [
    "DB_PATH", "LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL",
    "API_HTTP_HOST", "API_HTTP_PORT", "API_AUTH_TOKEN",
    "MAX_ACTIVE_GEOFENCES",
    "DEDUP_WINDOW_MINUTES", "DEDUP_DISTANCE_METERS",
    "BUNDLE_RADIUS_METERS", "BUNDLE_WINDOW_MINUTES", "BUNDLE_MAX_EVENTS",
    "EVENT_RETENTION_DAYS", "COMPLETED_TASK_GEOFENCE_RETENTION_DAYS",
    "DELIVERY_MAX_ATTEMPTS", "DELIVERY_RETRY_DELAY_MINUTES",
    "QUIET_HOURS_TOLERANCE_MINUTES", "FOCUS_MODE_RETRY_MINUTES", "RESPECT_FOCUS_MODE",
    "INGEST_MAX_ATTEMPTS", "INGEST_RETRY_DELAYS_MINUTES", "OFFLINE_SYNC_DEDUP_WINDOW_MINUTES",
    "CLAIM_LEASE_MINUTES", "DISPATCH_RECOVERY_HOURS",
    "SCHEDULER_SWEEP_SECONDS", "INGEST_SWEEP_SECONDS", "MAINTENANCE_SWEEP_SECONDS",
    "PUSH_MODE", "PUSH_SEND_TIMEOUT_SECONDS",
    "APNS_TEAM_ID", "APNS_KEY_ID", "APNS_BUNDLE_ID", "APNS_PRIVATE_KEY_PATH", "APNS_USE_SANDBOX",
    "FCM_PROJECT_ID", "FCM_CLIENT_EMAIL", "FCM_PRIVATE_KEY_PATH",
    "validate_settings",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default


def _parse_int_list(name: str, default: list[int]) -> list[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    try:
        values = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return list(default)
    return values or list(default)


# 运行环境
DB_PATH = os.getenv("GEONUDGE_DB_PATH", "data/geonudge.db")
LOG_FILE = os.getenv("GEONUDGE_LOG_FILE", "logs/geonudge.log")
LOG_LEVEL = os.getenv("GEONUDGE_LOG_LEVEL", "DEBUG")
CONSOLE_LOG_LEVEL = os.getenv("GEONUDGE_CONSOLE_LOG_LEVEL", "INFO")

# HTTP API
API_HTTP_HOST = os.getenv("API_HTTP_HOST", "127.0.0.1")
API_HTTP_PORT = _parse_int("API_HTTP_PORT", 18080)
API_AUTH_TOKEN = os.getenv("API_AUTH_TOKEN", "")

# 地理围栏配额（移动平台对同时监控的区域数有硬上限）
MAX_ACTIVE_GEOFENCES = _parse_int("MAX_ACTIVE_GEOFENCES", 20)

# 事件去重 / 打包
DEDUP_WINDOW_MINUTES = _parse_int("DEDUP_WINDOW_MINUTES", 15)
DEDUP_DISTANCE_METERS = _parse_float("DEDUP_DISTANCE_METERS", 100.0)
BUNDLE_RADIUS_METERS = _parse_float("BUNDLE_RADIUS_METERS", 500.0)
BUNDLE_WINDOW_MINUTES = _parse_int("BUNDLE_WINDOW_MINUTES", 5)
BUNDLE_MAX_EVENTS = _parse_int("BUNDLE_MAX_EVENTS", 5)

# 数据保留
EVENT_RETENTION_DAYS = _parse_int("EVENT_RETENTION_DAYS", 30)
COMPLETED_TASK_GEOFENCE_RETENTION_DAYS = _parse_int("COMPLETED_TASK_GEOFENCE_RETENTION_DAYS", 30)

# 通知投递
DELIVERY_MAX_ATTEMPTS = _parse_int("DELIVERY_MAX_ATTEMPTS", 3)
DELIVERY_RETRY_DELAY_MINUTES = _parse_int("DELIVERY_RETRY_DELAY_MINUTES", 5)
QUIET_HOURS_TOLERANCE_MINUTES = _parse_int("QUIET_HOURS_TOLERANCE_MINUTES", 5)
FOCUS_MODE_RETRY_MINUTES = _parse_int("FOCUS_MODE_RETRY_MINUTES", 30)
RESPECT_FOCUS_MODE = _parse_bool("RESPECT_FOCUS_MODE", True)
# 认领超过该时长仍未结束视为投递中断，由下一次扫描释放
CLAIM_LEASE_MINUTES = _parse_int("CLAIM_LEASE_MINUTES", 10)
# 已触发通知但没有投递记录的事件，在该时长内由补发扫描重新组装；须小于终态记录的清理期限 (24h)
DISPATCH_RECOVERY_HOURS = _parse_int("DISPATCH_RECOVERY_HOURS", 6)

# 事件处理重试队列
INGEST_MAX_ATTEMPTS = _parse_int("INGEST_MAX_ATTEMPTS", 3)
INGEST_RETRY_DELAYS_MINUTES = _parse_int_list("INGEST_RETRY_DELAYS_MINUTES", [1, 5, 15])
OFFLINE_SYNC_DEDUP_WINDOW_MINUTES = _parse_int("OFFLINE_SYNC_DEDUP_WINDOW_MINUTES", 60)

# 后台循环
SCHEDULER_SWEEP_SECONDS = _parse_float("SCHEDULER_SWEEP_SECONDS", 60.0)
INGEST_SWEEP_SECONDS = _parse_float("INGEST_SWEEP_SECONDS", 60.0)
MAINTENANCE_SWEEP_SECONDS = _parse_float("MAINTENANCE_SWEEP_SECONDS", 3600.0)

# 推送: "sandbox" 只记录日志, "live" 走 APNs / FCM
PUSH_MODE = os.getenv("PUSH_MODE", "sandbox").strip().lower()
PUSH_SEND_TIMEOUT_SECONDS = _parse_float("PUSH_SEND_TIMEOUT_SECONDS", 10.0)

APNS_TEAM_ID = os.getenv("APNS_TEAM_ID", "")
APNS_KEY_ID = os.getenv("APNS_KEY_ID", "")
APNS_BUNDLE_ID = os.getenv("APNS_BUNDLE_ID", "")
APNS_PRIVATE_KEY_PATH = os.getenv("APNS_PRIVATE_KEY_PATH", "")
APNS_USE_SANDBOX = _parse_bool("APNS_USE_SANDBOX", True)

FCM_PROJECT_ID = os.getenv("FCM_PROJECT_ID", "")
FCM_CLIENT_EMAIL = os.getenv("FCM_CLIENT_EMAIL", "")
FCM_PRIVATE_KEY_PATH = os.getenv("FCM_PRIVATE_KEY_PATH", "")


def validate_settings() -> bool:
    """启动前检查配置，返回 False 表示无法启动"""
    ok = True
    if PUSH_MODE not in ("sandbox", "live"):
        logger.critical(f"PUSH_MODE 非法: {PUSH_MODE}, 仅支持 sandbox 或 live")
        ok = False

    if PUSH_MODE == "live":
        if not (APNS_TEAM_ID and APNS_KEY_ID and APNS_BUNDLE_ID and APNS_PRIVATE_KEY_PATH):
            logger.critical("PUSH_MODE=live, 但 APNs 配置不完整 (APNS_TEAM_ID/APNS_KEY_ID/APNS_BUNDLE_ID/APNS_PRIVATE_KEY_PATH)")
            ok = False
        if not (FCM_PROJECT_ID and FCM_CLIENT_EMAIL and FCM_PRIVATE_KEY_PATH):
            logger.critical("PUSH_MODE=live, 但 FCM 配置不完整 (FCM_PROJECT_ID/FCM_CLIENT_EMAIL/FCM_PRIVATE_KEY_PATH)")
            ok = False

    if MAX_ACTIVE_GEOFENCES <= 0:
        logger.critical(f"MAX_ACTIVE_GEOFENCES 必须为正数: {MAX_ACTIVE_GEOFENCES}")
        ok = False

    if len(INGEST_RETRY_DELAYS_MINUTES) < INGEST_MAX_ATTEMPTS:
        logger.warning(
            f"INGEST_RETRY_DELAYS_MINUTES 长度 ({len(INGEST_RETRY_DELAYS_MINUTES)}) 小于 INGEST_MAX_ATTEMPTS "
            f"({INGEST_MAX_ATTEMPTS}), 多出的重试将复用最后一个退避时长"
        )

    if not API_AUTH_TOKEN:
        logger.warning("未配置 API_AUTH_TOKEN，HTTP API 将不可访问")

    return ok
