"""API 鉴权

API_AUTH_TOKEN 可以是单个 token，也可以是逗号分隔的 `label:token` 列表
（例如 `ios-app:xxx,ops:yyy`），label 会出现在运维操作的日志里。
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from geonudge.config import settings

DEFAULT_LABEL = "api-token"


def parse_tokens(raw: str | None) -> dict[str, str]:
    """token -> label"""
    tokens: dict[str, str] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        label, sep, token = entry.partition(":")
        if sep and label.strip() and token.strip():
            tokens[token.strip()] = label.strip()
        else:
            tokens[entry] = DEFAULT_LABEL
    return tokens


def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    token_header = request.headers.get("X-GeoNudge-Token", "").strip()
    return token_header or None


async def require_api_auth(request: Request) -> dict[str, str]:
    # 每次请求都重新读取配置，便于测试与热更新
    tokens = parse_tokens(settings.API_AUTH_TOKEN)
    if not tokens:
        raise HTTPException(status_code=503, detail="API_AUTH_TOKEN 未配置")

    presented = extract_token(request)
    if presented:
        for token, label in tokens.items():
            if hmac.compare_digest(presented, token):
                return {"auth": "token", "user": label}

    raise HTTPException(status_code=401, detail="未授权")
