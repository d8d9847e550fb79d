# storia/queues.py
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, Optional, TypeVar

from storia.errors import EnqueueError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class QueueSet:
    """
    Conjunto explícito de colas con nombre, cada una con su propio
    límite de concurrencia. Se construye una vez y se pasa al
    Orchestrator; no hay estado global de colas.

    Colas por defecto:
    - pipeline:   libros completos
    - analysis:   llamadas al analizador de contenido
    - generation: llamadas al sintetizador de audio
    """

    def __init__(self, limits: dict[str, int]):
        if not limits:
            raise ValueError("QueueSet necesita al menos una cola")
        for name, limit in limits.items():
            if limit < 1:
                raise ValueError(f"La cola '{name}' necesita un límite >= 1 (llegó {limit})")

        self._limits    = dict(limits)
        self._executors = {
            name: ThreadPoolExecutor(max_workers=limit, thread_name_prefix=f"storia-{name}")
            for name, limit in limits.items()
        }
        self._closed = False
        self._lock   = threading.Lock()

    @property
    def names(self) -> list[str]:
        return list(self._limits)

    def limit(self, queue: str) -> int:
        if queue not in self._limits:
            raise EnqueueError(f"Cola desconocida: '{queue}'")
        return self._limits[queue]

    def submit(self, queue: str, fn: Callable[..., R], *args, **kwargs) -> Future:
        """Encola un trabajo. Cualquier fallo al encolar es EnqueueError, nunca silencioso."""
        with self._lock:
            if self._closed:
                raise EnqueueError(f"Las colas están cerradas, no se puede encolar en '{queue}'")
            executor = self._executors.get(queue)
            if executor is None:
                raise EnqueueError(f"Cola desconocida: '{queue}'")
            try:
                return executor.submit(fn, *args, **kwargs)
            except RuntimeError as e:
                raise EnqueueError(f"No se pudo encolar en '{queue}': {e}") from e

    def map_bounded(
        self,
        queue:       str,
        fn:          Callable[[T], R],
        items:       Iterable[T],
        on_result:   Optional[Callable[[R], None]] = None,
    ) -> list[R]:
        """
        Aplica fn a cada item en la cola indicada con como mucho
        limit(queue) trabajos en vuelo de este caller, para que un
        libro grande no acapare la cola compartida.
        Devuelve los resultados en el orden de items.
        """
        bound   = self.limit(queue)
        pending: dict[Future, int] = {}
        results: dict[int, R]      = {}

        def _drain(block_until: int) -> None:
            while len(pending) > block_until:
                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    results[index] = future.result()
                    if on_result is not None:
                        on_result(results[index])

        for index, item in enumerate(items):
            _drain(bound - 1)
            pending[self.submit(queue, fn, item)] = index
        _drain(0)

        return [results[i] for i in sorted(results)]

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for name, executor in self._executors.items():
            logger.debug("Cerrando cola %s", name)
            executor.shutdown(wait=wait)

    def __enter__(self) -> "QueueSet":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
