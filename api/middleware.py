"""请求监控和日志中间件

为每个请求分配关联 ID（X-Request-Id，可由客户端传入），记录处理时间、
错误与慢请求。
"""
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from config.settings import get_settings
from config.logging import get_logger


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """请求日志 + 关联 ID 中间件"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        settings = get_settings()
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req-{uuid.uuid4().hex[:16]}"
        request.state.request_id = request_id
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"[API] {request.method} {request.url.path} [{request_id}] - {process_time:.3f}s - ERROR: {e}",
                extra={"path": str(request.url.path), "method": request.method, "status": "error"}
            )
            raise

        # 流式响应在此处只计到响应头返回为止
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 400:
            logger.warning(
                f"[API] {request.method} {request.url.path} [{request_id}] - {response.status_code} - {process_time:.3f}s",
                extra={"path": str(request.url.path), "method": request.method, "status": response.status_code}
            )
        elif settings.logging.slow_request_threshold and process_time > settings.logging.slow_request_threshold:
            logger.warning(
                f"[API] {request.method} {request.url.path} [{request_id}] - SLOW - {process_time:.3f}s",
                extra={"path": str(request.url.path), "method": request.method, "slow": True}
            )

        return response
