import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Backing store API
    BACKEND_BASE_URL: str = os.getenv("BACKEND_BASE_URL", "http://localhost:5000")
    API_TOKEN: str = os.getenv("API_TOKEN", "")

    # Актор, от имени которого работает движок
    DELIVERER_ID: str = os.getenv("DELIVERER_ID", "")
    SHOP_ID: str = os.getenv("SHOP_ID", "")

    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # Kafka (push-канал)
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka.kafka.svc.cluster.local:9092")
    KAFKA_PUSH_TOPIC: str = os.getenv("KAFKA_PUSH_TOPIC", "delivery.push-events")

    # Таймеры (секунды)
    AUTO_CANCEL_SECONDS: int = int(os.getenv("AUTO_CANCEL_SECONDS", "300"))
    PREPARING_DEADLINE_SECONDS: int = int(os.getenv("PREPARING_DEADLINE_SECONDS", "600"))
    OFFER_ACCEPT_WINDOW_SECONDS: int = int(os.getenv("OFFER_ACCEPT_WINDOW_SECONDS", "30"))
    UNKNOWN_DISTANCE_REVEAL_SECONDS: int = int(os.getenv("UNKNOWN_DISTANCE_REVEAL_SECONDS", "60"))
    REALERT_INTERVAL_SECONDS: int = int(os.getenv("REALERT_INTERVAL_SECONDS", "5"))
    POLL_INTERVAL_SECONDS: int = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))
    ORDER_TICK_SECONDS: int = int(os.getenv("ORDER_TICK_SECONDS", "1"))

    # Минимальный баланс кредитов, чтобы выйти на линию
    MIN_WORK_CREDIT: float = float(os.getenv("MIN_WORK_CREDIT", "300"))

    @property
    def DATABASE_URL(self) -> str:
        """Асинхронный URL для хранилища стадий"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite+aiosqlite:///./courier_dispatch.db"
        url = self.POSTGRES_CONNECTION_STRING
        for prefix in ("postgresql://", "postgres://"):
            if url.startswith(prefix):
                return "postgresql+asyncpg://" + url[len(prefix):]
        return url


settings = Settings()
