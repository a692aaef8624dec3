"""
Common — サービス設定

各サービスは環境変数から設定を読み込む。
接続クライアントはここでは作らない: lifespan で明示的に生成し、
サービスへ注入する(プロセス全体のシングルトンにはしない)。
"""

import os
from dataclasses import dataclass

DEFAULT_REDIS_URL = "redis://localhost:6379"


@dataclass(frozen=True)
class Settings:
    service_name: str
    database_url: str
    redis_url: str = DEFAULT_REDIS_URL
    log_level: str = "INFO"
    # "redis" = Redis Pub/Sub, "memory" = プロセス内ブローカー(ローカル実行・テスト用)
    event_transport: str = "redis"

    @classmethod
    def from_env(cls, service_name: str, default_database_url: str) -> "Settings":
        return cls(
            service_name=os.environ.get("SERVICE_NAME", service_name),
            database_url=os.environ.get("DATABASE_URL", default_database_url),
            redis_url=os.environ.get("REDIS_URL", DEFAULT_REDIS_URL),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            event_transport=os.environ.get("EVENT_TRANSPORT", "redis"),
        )
