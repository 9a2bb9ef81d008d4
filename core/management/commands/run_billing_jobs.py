import json

from django.core.management.base import BaseCommand, CommandError

from billing.jobs import build_default_registry
from common.exceptions import InvalidRequest
from common.utils import parse_iso_date


class Command(BaseCommand):
    help = "Run the billing jobs due today (or a single job with --job)."

    def add_arguments(self, parser):
        parser.add_argument("--job", dest="job", help="Run only this job, whether or not it is due.")
        parser.add_argument("--date", dest="date", help="Run as of this civil date (YYYY-MM-DD).")
        parser.add_argument("--list", action="store_true", help="List registered jobs and exit.")

    def handle(self, *args, **options):
        registry = build_default_registry()

        if options.get("list"):
            for name in registry.names():
                self.stdout.write(name)
            return

        run_date = None
        if options.get("date"):
            run_date = parse_iso_date(options["date"])
            if run_date is None:
                raise CommandError("--date must be in YYYY-MM-DD format.")

        if options.get("job"):
            try:
                result = registry.run(options["job"], run_date)
            except InvalidRequest as exc:
                raise CommandError(str(exc.detail)) from exc
            self.stdout.write(json.dumps(result, default=str, indent=2))
            self.stdout.write(self.style.SUCCESS(f"Job {options['job']} complete."))
            return

        outcomes = registry.run_due(run_date)
        failed = [name for name, outcome in outcomes.items() if not outcome["ok"]]
        for name, outcome in outcomes.items():
            if outcome["ok"]:
                self.stdout.write(self.style.SUCCESS(f"{name}: ok"))
            else:
                self.stdout.write(self.style.ERROR(f"{name}: {outcome['error']}"))
        self.stdout.write(
            self.style.SUCCESS(f"Billing jobs complete. Ran {len(outcomes)}, failed {len(failed)}.")
        )
