"""Tarea periódica cancelable, una por sesión."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RecurringTask:
    """Ejecuta ``action`` cada ``interval`` segundos en un thread daemon.

    ``cancel()`` es síncrono: al retornar, la acción no vuelve a ejecutarse
    (salvo que se llame desde la propia acción, caso en que no se espera el
    thread). Si ``action`` retorna False la tarea se detiene sola.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], Optional[bool]]):
        self.name = name
        self.interval = interval
        self._action = action
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._runs = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    @property
    def runs(self) -> int:
        return self._runs

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                keep_going = self._action()
            except Exception as e:
                logger.exception("[SESSION] Task %s failed: %s", self.name, e)
                keep_going = True
            self._runs += 1
            if keep_going is False:
                self._stop_event.set()
