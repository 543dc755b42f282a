import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.exceptions import GatewayError, PaymentError, StorageFailure
from payments.gateways import get_active_config
from payments.integrations.phonepe import fetch_payment_status
from payments.models import PaymentAttempt
from payments.webhook import apply_outcome, outcome_from_document


class Command(BaseCommand):
    help = "Poll the gateway status API for stale pending payment attempts and apply their outcomes"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)
        parser.add_argument("--gateway", default=None, help="Only reconcile attempts of this gateway")

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timedelta(minutes=opts["older_than_minutes"])
        qs = PaymentAttempt.objects.filter(status=PaymentAttempt.Status.PENDING, created_at__lt=cutoff)
        if opts["gateway"]:
            qs = qs.filter(gateway_name=opts["gateway"])
        attempts = list(qs.order_by("created_at")[:opts["max"]])

        if not attempts:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        configs = {}
        for attempt in attempts:
            try:
                if attempt.gateway_name not in configs:
                    configs[attempt.gateway_name] = get_active_config(attempt.gateway_name)
                config = configs[attempt.gateway_name]
                document = fetch_payment_status(config, attempt.transaction_ref)
                outcome = outcome_from_document(document)
                if outcome.merchant_transaction_ref != attempt.transaction_ref:
                    self.stdout.write(self.style.WARNING(
                        f"{attempt.transaction_ref}: status document is for "
                        f"{outcome.merchant_transaction_ref}; skipped"
                    ))
                else:
                    result = apply_outcome(outcome, config.name, source="reconcile")
                    self.stdout.write(self.style.SUCCESS(f"{attempt.transaction_ref} -> {result.outcome}"))
            except StorageFailure:
                raise
            except (GatewayError, PaymentError) as e:
                self.stdout.write(self.style.WARNING(f"{attempt.transaction_ref}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])
