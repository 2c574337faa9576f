"""Dispatcher: desacopla los callbacks de paho y del poller cloud del routing.

Cada tarea lleva su tipo (uplink, c2d, estado de downlink, session_lost) y el
dispositivo o aplicación de origen. Los contadores se llevan por tipo, así un
pico de uplinks que llena la cola se distingue de comandos cloud descartados.

Una cola llena descarta la tarea (backpressure): el mensaje MQTT QoS 1 ya fue
confirmado por paho y el mensaje cloud sigue bloqueado hasta que expire su
lock, momento en que el backend lo reentrega.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .metrics import DISPATCH_TASKS, DISPATCH_WAIT

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 4
DEFAULT_TASK_KIND = "task"
# Un worker que ve tareas con más espera que esto avisa (workers saturados)
SLOW_WAIT_SECONDS = 5.0


@dataclass
class Task:
    kind: str
    fn: Callable[..., Any]
    args: tuple = ()
    origin: Optional[str] = None
    enqueued_at: float = field(default_factory=time.monotonic)

    def describe(self) -> str:
        if self.origin:
            return f"{self.kind}[{self.origin}]"
        return self.kind


def _new_counts() -> dict[str, int]:
    return {"enqueued": 0, "dropped": 0, "processed": 0, "errors": 0}


class Dispatcher:
    def __init__(
        self,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        num_workers: int = DEFAULT_NUM_WORKERS,
    ):
        self._queue: queue.Queue[Task] = queue.Queue(maxsize=max_queue_size)
        self._num_workers = num_workers
        self._stop_event = threading.Event()

        self._counts: defaultdict[str, dict[str, int]] = defaultdict(_new_counts)
        self._max_wait = 0.0
        self._lock = threading.Lock()

        self._workers: list[threading.Thread] = []

    def start(self) -> None:
        self._stop_event.clear()
        for i in range(self._num_workers):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i,),
                daemon=True,
                name=f"connector-worker-{i}",
            )
            t.start()
            self._workers.append(t)
        logger.info(
            "[DISPATCH] Started workers=%d queue_max=%d",
            self._num_workers, self._queue.maxsize,
        )

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        """Para los workers. Con drain=True espera (hasta timeout) a que la cola se vacíe."""
        if drain and self._workers:
            with self._queue.all_tasks_done:
                drained = self._queue.all_tasks_done.wait_for(
                    lambda: self._queue.unfinished_tasks == 0, timeout=timeout,
                )
            if not drained:
                logger.warning("[DISPATCH] Drain timeout, %d tasks pending", self._queue.qsize())
        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=timeout)
        self._workers.clear()
        logger.info("[DISPATCH] Stopped. %s", self.metrics)

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        label: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> bool:
        """Encola `fn(*args)` como tarea de tipo `label`. False si la cola está llena."""
        task = Task(kind=label or DEFAULT_TASK_KIND, fn=fn, args=args, origin=origin)
        try:
            self._queue.put_nowait(task)
        except queue.Full:
            self._count(task.kind, "dropped")
            DISPATCH_TASKS.labels(task=task.kind, result="dropped").inc()
            logger.warning("[DISPATCH] Queue full, dropped %s", task.describe())
            return False
        self._count(task.kind, "enqueued")
        return True

    def _count(self, kind: str, name: str) -> None:
        with self._lock:
            self._counts[kind][name] += 1

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            try:
                task = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            try:
                self._run(worker_id, task)
            finally:
                self._queue.task_done()

    def _run(self, worker_id: int, task: Task) -> None:
        waited = time.monotonic() - task.enqueued_at
        DISPATCH_WAIT.labels(task=task.kind).observe(waited)
        with self._lock:
            self._max_wait = max(self._max_wait, waited)
        if waited > SLOW_WAIT_SECONDS:
            logger.warning("[DISPATCH] %s waited %.1fs in queue", task.describe(), waited)

        try:
            task.fn(*task.args)
        except Exception as e:
            self._count(task.kind, "errors")
            DISPATCH_TASKS.labels(task=task.kind, result="error").inc()
            logger.exception("[DISPATCH] Worker %d error %s: %s", worker_id, task.describe(), e)
            return
        self._count(task.kind, "processed")
        DISPATCH_TASKS.labels(task=task.kind, result="processed").inc()

    def counts(self, kind: str) -> dict[str, int]:
        with self._lock:
            return dict(self._counts.get(kind) or _new_counts())

    @property
    def metrics(self) -> dict:
        with self._lock:
            totals = _new_counts()
            for counts in self._counts.values():
                for name, value in counts.items():
                    totals[name] += value
            return {
                "queue_depth": self._queue.qsize(),
                "queue_max": self._queue.maxsize,
                **totals,
                "max_wait_seconds": round(self._max_wait, 3),
                "by_task": {kind: dict(counts) for kind, counts in self._counts.items()},
            }
