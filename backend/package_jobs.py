"""Background workers for the package expiry sweep and renewal eligibility refresh."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional, Union

from backend.app.packages import ExpirySweepReport, RenewalRefreshSummary
from backend.app.services.packages import get_package_config, get_package_service

logger = logging.getLogger(__name__)


class PackageJob(str, Enum):
    EXPIRY_SWEEP = "expiry_sweep"
    RENEWAL_REFRESH = "renewal_refresh"


_scheduler_lock = Lock()
_workers: Dict[str, "_PackageJobWorker"] = {}


def _empty_metrics() -> Dict[PackageJob, Dict[str, object]]:
    return {
        PackageJob.EXPIRY_SWEEP: {
            "runs": 0,
            "anomalies_found": 0,
            "packages_deactivated": 0,
            "residual_anomalies": 0,
            "failures": 0,
            "last_run_at": None,
            "last_success_at": None,
            "last_error": None,
        },
        PackageJob.RENEWAL_REFRESH: {
            "runs": 0,
            "packages_processed": 0,
            "eligible": 0,
            "failures": 0,
            "last_run_at": None,
            "last_success_at": None,
            "last_error": None,
        },
    }


_JOB_METRICS = _empty_metrics()
_metrics_lock = Lock()

JobResult = Union[ExpirySweepReport, RenewalRefreshSummary]


def _record_run_start(job: PackageJob, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["runs"] = int(metrics["runs"]) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(job: PackageJob, completed_at: datetime, result: JobResult) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        if isinstance(result, ExpirySweepReport):
            metrics["anomalies_found"] = int(metrics["anomalies_found"]) + len(result.anomalies)
            metrics["packages_deactivated"] = int(metrics["packages_deactivated"]) + len(result.deactivated_ids)
            metrics["residual_anomalies"] = int(metrics["residual_anomalies"]) + len(result.residual_anomalies)
            metrics["failures"] = int(metrics["failures"]) + result.error_count
        else:
            metrics["packages_processed"] = int(metrics["packages_processed"]) + result.total_processed
            metrics["eligible"] = int(metrics["eligible"]) + result.eligible_count
            metrics["failures"] = int(metrics["failures"]) + result.error_count
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(job: PackageJob, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job]
        metrics["failures"] = int(metrics["failures"]) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def _run_expiry_sweep() -> ExpirySweepReport:
    config = get_package_config()
    return get_package_service().sweep_expired_packages(run_cleanup=config.expiry_sweep_run_cleanup)


def _run_renewal_refresh() -> RenewalRefreshSummary:
    return get_package_service().refresh_renewal_eligibility()


_JOB_RUNNERS: Dict[PackageJob, Callable[[], JobResult]] = {
    PackageJob.EXPIRY_SWEEP: _run_expiry_sweep,
    PackageJob.RENEWAL_REFRESH: _run_renewal_refresh,
}


def run_package_job(job: PackageJob, *, now: Optional[datetime] = None) -> JobResult:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(job, current_time)
    try:
        result = _JOB_RUNNERS[job]()
    except Exception as exc:
        _record_run_failure(job, exc)
        logger.exception("Package job failed", extra={"job": job.value})
        raise
    _record_run_success(job, current_time, result)
    logger.info("Package job completed", extra={"job": job.value})
    return result


class _PackageJobWorker(Thread):
    def __init__(self, job: PackageJob, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name=f"package-job-{job.value}")
        self.job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_package_job(self.job)
            except Exception:
                # Failures are logged and counted by run_package_job.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_package_scheduler() -> None:
    config = get_package_config()
    with _scheduler_lock:
        if _workers:
            return
        if config.expiry_sweep_enabled:
            _workers[PackageJob.EXPIRY_SWEEP.value] = _PackageJobWorker(
                PackageJob.EXPIRY_SWEEP,
                initial_delay=30.0,
                interval=config.expiry_sweep_interval_seconds,
            )
        if config.renewal_refresh_enabled:
            _workers[PackageJob.RENEWAL_REFRESH.value] = _PackageJobWorker(
                PackageJob.RENEWAL_REFRESH,
                initial_delay=60.0,
                interval=config.renewal_refresh_interval_seconds,
            )
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Package scheduler started",
            extra={
                "jobs": sorted(_workers),
                "expiry_sweep_interval_seconds": config.expiry_sweep_interval_seconds,
                "renewal_refresh_interval_seconds": config.renewal_refresh_interval_seconds,
            },
        )


def shutdown_package_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Package scheduler stopped")


def get_package_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for job, value in _JOB_METRICS.items():
            snapshot[job.value] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for job, defaults in _empty_metrics().items():
            _JOB_METRICS[job].update(defaults)


__all__ = [
    "PackageJob",
    "get_package_job_metrics",
    "run_package_job",
    "shutdown_package_scheduler",
    "start_package_scheduler",
]
