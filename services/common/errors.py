"""
Common — エラー分類

  BadRequestError  入力が不正            → 400
  NotFoundError    参照先が存在しない    → 404
  ConflictError    一意制約違反 / 不正な状態遷移 → 409
  EventPublishError ローカル書き込みは成功したが通知に失敗 → 502

インフラ障害(DB 接続断など)はここでは包まず、そのまま伝播させる。
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class EventPublishError(ServiceError):
    """ローカルトランザクションはコミット済みだが、下流サービスへの通知は保証されない。"""

    status_code = 502


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
