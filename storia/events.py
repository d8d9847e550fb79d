# storia/events.py
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from storia.storage.models import BookStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookStatusChanged:
    book_id:  int
    previous: Optional[BookStatus]
    current:  BookStatus
    error:    Optional[str] = None
    at:       str           = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class SceneProgress:
    """Avance dentro de una etapa (spreads analizados, escenas generadas)."""
    book_id: int
    stage:   str
    done:    int
    total:   int


Subscriber = Callable[[object], None]


class ProgressChannel:
    """
    Pub/sub en proceso para la UI o el CLI.
    La entrega es best-effort: si un suscriptor falla se registra y se
    sigue. El estado autoritativo es siempre el status persistido del libro.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Devuelve una función para darse de baja."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: object) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning("Suscriptor %r falló con %s: %s", callback, type(e).__name__, e)
