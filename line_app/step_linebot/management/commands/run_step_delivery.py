import time

from django.core.management.base import BaseCommand

from step_linebot.utils.delivery import run_scheduled_delivery


class Command(BaseCommand):
    help = "配信時刻に達したステップを配信し続ける (--once で1回だけ)"

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true")
        parser.add_argument("--scenario", default=None)

    def handle(self, *args, **options):
        while True:
            result = run_scheduled_delivery(scenario_id=options["scenario"])
            if options["once"]:
                self.stdout.write(
                    f"delivered: {result['delivered']}, errors: {result['errors']}, "
                    f"next: {result['nextCheckDelaySeconds']}s"
                )
                return
            time.sleep(result["nextCheckDelaySeconds"])
