"""Time-triggered billing jobs.

A `JobRegistry` is built with a clock; each job is a function of the run date
plus a predicate saying on which civil dates it is due. The management command
`run_billing_jobs`, fired by system cron once a day, runs whatever is due.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable

from billing.monthly import create_monthly_payment_records, enforce_overdue_payments
from billing.penalties import check_and_charge_penalties
from billing.status import is_past_grace_period, update_status
from common.exceptions import InvalidRequest
from common.logging import log_context
from common.utils import _to_json_compatible, local_today
from customers.models import Customer
from deliveries.scheduler import ensure_deliveries_for_all_routes

logger = logging.getLogger("billing.jobs")


def every_day(run_date):
    return True


def first_of_month(run_date):
    return run_date.day == 1


@dataclass
class Job:
    name: str
    func: Callable[[Any], Any]
    is_due: Callable[[Any], bool] = every_day


class JobRegistry:
    def __init__(self, clock=local_today):
        self.clock = clock
        self._jobs: dict[str, Job] = {}

    def register(self, name, func, *, when=every_day):
        if name in self._jobs:
            raise InvalidRequest(f"Job '{name}' is already registered.")
        self._jobs[name] = Job(name=name, func=func, is_due=when)

    def names(self):
        return list(self._jobs)

    def due(self, run_date=None):
        run_date = run_date or self.clock()
        return [job.name for job in self._jobs.values() if job.is_due(run_date)]

    def run(self, name, run_date=None):
        job = self._jobs.get(name)
        if job is None:
            raise InvalidRequest(f"Unknown job '{name}'. Available: {', '.join(self._jobs)}.")
        run_date = run_date or self.clock()
        with log_context(job=name, run_date=run_date.isoformat()):
            logger.info("job_started")
            result = job.func(run_date)
            logger.info("job_completed")
        return result

    def run_due(self, run_date=None):
        """Run every due job; a failing job is logged and the rest still run."""
        run_date = run_date or self.clock()
        outcomes = {}
        for name in self.due(run_date):
            try:
                outcomes[name] = {"ok": True, "result": _to_json_compatible(self.run(name, run_date))}
            except Exception as exc:
                logger.exception("job_failed", extra={"job": name, "run_date": run_date.isoformat()})
                outcomes[name] = {"ok": False, "error": str(exc)}
        return outcomes


def refresh_statuses(run_date):
    counts = {}
    customer_ids = Customer.objects.filter(subscription__isnull=False).values_list("id", flat=True)
    for customer_id in customer_ids:
        status = update_status(customer_id, today=run_date)
        counts[status] = counts.get(status, 0) + 1
    return counts


def schedule_deliveries(run_date):
    return {
        delivery_person_id: summary.as_dict()
        for delivery_person_id, summary in ensure_deliveries_for_all_routes(run_date, run_date).items()
    }


def build_default_registry(clock=local_today):
    registry = JobRegistry(clock=clock)
    registry.register(
        "monthly_records",
        lambda run_date: create_monthly_payment_records(run_date.year, run_date.month, today=run_date),
        when=first_of_month,
    )
    registry.register(
        "overdue_enforcement",
        lambda run_date: enforce_overdue_payments(run_date.year, run_date.month, today=run_date),
        when=is_past_grace_period,
    )
    registry.register(
        "penalty_sweep",
        lambda run_date: [result.as_dict() for result in check_and_charge_penalties(today=run_date)],
    )
    registry.register("status_refresh", refresh_statuses)
    registry.register("delivery_schedule", schedule_deliveries)
    return registry
