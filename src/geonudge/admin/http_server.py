from __future__ import annotations

import asyncio
import time

import uvicorn
from fastapi import FastAPI

from geonudge.config.settings import API_HTTP_HOST, API_HTTP_PORT
from geonudge.core.service import GeoNudgeService
from geonudge.logger import logger

from .app import create_app
from .schemas import RuntimeControl


def build_server(app: FastAPI, host: str = API_HTTP_HOST, port: int = API_HTTP_PORT) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        # log_config=None: 不让 uvicorn 覆盖 logging 配置，日志经 InterceptHandler 进入 loguru
        log_config=None,
        access_log=False,
    )
    server = uvicorn.Server(config)
    # 嵌入到主进程时，统一由 main.py 处理系统信号
    server.install_signal_handlers = lambda: None
    return server


async def main_loop(shutdown_event: asyncio.Event, service: GeoNudgeService) -> None:
    control = RuntimeControl(shutdown_event=shutdown_event, started_at=time.time())
    server = build_server(create_app(service, control))

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(stop_on_shutdown())
    logger.info(f"HTTP API 服务准备启动: http://{API_HTTP_HOST}:{API_HTTP_PORT}")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        if not shutdown_event.is_set():
            # 服务意外退出（如端口被占用）时让其他循环一起退出
            logger.error("HTTP API 服务意外退出，触发整体关闭")
            shutdown_event.set()
        logger.info("HTTP API 服务已关闭")
