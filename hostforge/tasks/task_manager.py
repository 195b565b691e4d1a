# hostforge/tasks/task_manager.py
import queue
import threading
from typing import List

from hostforge.core.config_store import AppConfig
from hostforge.core.logging import log
from hostforge.core.store import Store
from hostforge.tasks.jobs import Job, JobContext, job_from_dict
from hostforge.transport.base import Transport


class TaskManager:
    """Durable job queue drained by a pool of daemon threads.

    Every submitted job is written to ``jobs/`` first and deleted after it
    ran, so whatever was still queued at shutdown is picked up again by
    :meth:`restore_from_disk`.
    """

    def __init__(self, store: Store, transport: Transport, config: AppConfig):
        self.store = store
        self.config = config
        self.ctx = JobContext(store=store, transport=transport, config=config, queue=self)
        self._queue: "queue.Queue[Job]" = queue.Queue()
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def is_running(self) -> bool:
        with self._lock:
            return any(t.is_alive() for t in self._threads)

    def submit(self, job: Job) -> Job:
        self.store.save_job(job.job_id, job.to_dict())
        self._queue.put(job)
        return job

    def pending_count(self) -> int:
        return self._queue.qsize()

    def start(self, worker_count: int = 0):
        n = worker_count or self.config.worker_count
        with self._lock:
            if any(t.is_alive() for t in self._threads):
                return
            self._stop.clear()
            self._threads = []
            for i in range(max(1, n)):
                t = threading.Thread(target=self._loop, name=f"hostforge-worker-{i}", daemon=True)
                self._threads.append(t)
                t.start()
        log("worker", f"started {n} workers")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        with self._lock:
            threads, self._threads = self._threads, []
        for t in threads:
            t.join(timeout)
        log("worker", "workers stopped")

    def _loop(self):
        while not self._stop.is_set():
            try:
                job = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.run_job(job)
            finally:
                self._queue.task_done()

    def run_job(self, job: Job):
        try:
            job.run(self.ctx)
        except Exception as e:
            # A broken job must never take the worker down with it.
            log("worker", f"job {job!r} crashed: {type(e).__name__}: {str(e)[:500]}", level="error")
        finally:
            self.store.delete_job(job.job_id)

    def drain(self):
        """Run everything queued, including follow-ups, and return when idle.

        With workers started this waits for them; otherwise jobs run in the
        calling thread.
        """
        if self.is_running():
            self._queue.join()
            return
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                self.run_job(job)
            finally:
                self._queue.task_done()

    def restore_from_disk(self) -> int:
        n = 0
        for data in self.store.list_jobs():
            try:
                job = job_from_dict(data)
            except (ValueError, TypeError) as e:
                log("startup", f"restore failed {data.get('job_id')}: {type(e).__name__}: {str(e)[:200]}", level="error")
                continue
            self._queue.put(job)
            n += 1
        if n:
            log("startup", f"restored {n} queued jobs")
        return n
