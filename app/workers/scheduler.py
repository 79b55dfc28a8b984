"""
Worker Scheduler Configuration

In-process alternative to the external cron: sweeps the retry queue and refreshes a missing
Lightspeed token at fixed intervals. Each worker is enabled only when its interval is > 0.
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from app.config import settings
from app.services.exceptions import BridgeError

logger = logging.getLogger(__name__)

MAX_TICK_SECONDS = 60


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(self, bridge, retry_interval: Optional[int] = None, refresh_interval: Optional[int] = None):
        self.bridge = bridge
        retry_interval = settings.RETRY_SWEEP_INTERVAL_SEC if retry_interval is None else retry_interval
        refresh_interval = settings.TOKEN_REFRESH_INTERVAL_SEC if refresh_interval is None else refresh_interval
        self.workers = {
            "retry_sweep": {
                "func": self._retry_sweep,
                "interval": retry_interval,
                "last_run": None,
                "enabled": retry_interval > 0
            },
            "token_refresh": {
                "func": self._token_refresh,
                "interval": refresh_interval,
                "last_run": None,
                "enabled": refresh_interval > 0
            }
        }
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def _retry_sweep(self) -> Dict[str, Any]:
        result = await self.bridge.queue.drain()
        return {"success": True, "message": f"Processed {result.processed} queued retries", **result.to_dict()}

    async def _token_refresh(self) -> Dict[str, Any]:
        refreshed = await self.bridge.refresh_if_missing()
        return {"success": True, "message": "Token refreshed" if refreshed else "Token still valid"}

    def has_enabled_workers(self) -> bool:
        return any(w["enabled"] for w in self.workers.values())

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a single worker and log results.

        Args:
            worker_name: Name of the worker
            worker_config: Worker configuration

        Returns:
            Worker result
        """
        worker_config["last_run"] = datetime.now(timezone.utc)
        try:
            logger.info(f"Starting worker: {worker_name}")
            result = await worker_config["func"]()
            logger.info(f"Worker {worker_name} completed: {result.get('message', 'No message')}")
            return result
        except BridgeError as e:
            logger.error(f"Worker {worker_name} failed: {e}")
            return {
                "success": False,
                "message": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        except Exception as e:
            logger.exception(f"Worker {worker_name} crashed: {e}")
            return {
                "success": False,
                "message": f"Worker crashed: {str(e)}",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    def _tick(self) -> int:
        intervals = [w["interval"] for w in self.workers.values() if w["enabled"]]
        return min(intervals + [MAX_TICK_SECONDS])

    async def start_scheduler(self):
        """Run due workers until stopped. Workers run inline so one sweep never overlaps the next."""
        self.running = True
        logger.info("🚀 Worker scheduler started")

        while self.running:
            current_time = datetime.now(timezone.utc)

            for worker_name, worker_config in self.workers.items():
                if not worker_config["enabled"]:
                    continue

                last_run = worker_config["last_run"]
                interval = worker_config["interval"]

                if last_run is None or (current_time - last_run).total_seconds() >= interval:
                    await self.run_worker(worker_name, worker_config)

            await asyncio.sleep(self._tick())

    def start(self) -> bool:
        """Schedule the loop on the running event loop. False when no worker is enabled."""
        if not self.has_enabled_workers():
            logger.info("Background workers disabled (set RETRY_SWEEP_INTERVAL_SEC / TOKEN_REFRESH_INTERVAL_SEC)")
            return False
        self._task = asyncio.create_task(self.start_scheduler())
        logger.info("✅ Background workers started successfully")
        return True

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.info("⏹️ Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}

        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = None

            if last_run and worker_config["enabled"]:
                next_run = last_run + timedelta(seconds=worker_config["interval"])

            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat() if next_run else None,
                "interval_seconds": worker_config["interval"],
                "status": "running" if self.running else "stopped"
            }

        return status
