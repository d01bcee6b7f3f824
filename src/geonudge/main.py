from geonudge.logger import setup_logging, logger
from geonudge.config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal
import sys

from geonudge.admin.http_server import main_loop as api_http_main
from geonudge.core import maintenance
from geonudge.core.service import GeoNudgeService
import geonudge.storage.db_config as db_config

shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not validate_settings():
        logger.critical("配置校验失败，GeoNudge 无法启动")
        sys.exit(1)

    await db_config.init_db(DB_PATH)

    service = GeoNudgeService()

    try:
        await service.startup_recovery()
        tasks = [
            service.queue.main_loop(shutdown_event),
            service.scheduler.main_loop(shutdown_event),
            service.dispatch_main_loop(shutdown_event),
            maintenance.main_loop(shutdown_event, service),
            api_http_main(shutdown_event, service),
        ]
        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 GeoNudge...")
        await service.aclose()

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        logger.info("GeoNudge 已关闭")


def run():
    logger.info("启动 GeoNudge...")
    asyncio.run(main())


if __name__ == "__main__":
    run()
