import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.exceptions import GatewayError, ReconciliationGap
from payments.models import AttemptStatus, PaymentAttempt
from payments.services import flag_for_review, reconcile_from_gateway


class Command(BaseCommand):
    help = "Poll the payment gateway for open attempts and apply their final status"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timedelta(minutes=opts["older_than_minutes"])
        qs = (
            PaymentAttempt.objects.filter(status=AttemptStatus.CREATED, gateway_ref__isnull=False)
            .filter(updated_at__lt=cutoff)
            .order_by("updated_at")[: opts["max"]]
        )
        attempts = list(qs)
        if not attempts:
            self.stdout.write(self.style.SUCCESS("No open payment attempts to reconcile."))
            return

        applied = 0
        for a in attempts:
            try:
                outcome = reconcile_from_gateway(a.gateway_ref, source="reconcile")
                if outcome == "applied":
                    applied += 1
                    a.refresh_from_db()
                    self.stdout.write(self.style.SUCCESS(f"Attempt {a.pk} ({a.gateway_ref}) -> {a.status}"))
                else:
                    self.stdout.write(f"Attempt {a.pk} ({a.gateway_ref}): {outcome}")
            except ReconciliationGap as e:
                flag_for_review(event_id=f"reconcile:{a.gateway_ref}", gateway_ref=a.gateway_ref, reason=e.reason)
                self.stdout.write(self.style.WARNING(f"{a.gateway_ref}: {e}"))
            except GatewayError as e:
                self.stdout.write(self.style.WARNING(f"{a.gateway_ref}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(attempts)}, updated {applied} attempts."))
