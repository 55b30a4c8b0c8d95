import os
import time

from django.conf import settings
from django.core.management.base import BaseCommand
from watchdog.observers import Observer

from step_linebot.utils.maintenance import FileChangeHandler


class Command(BaseCommand):
    help = "メンテナンス設定ファイルを監視し，メンテナンスモードの切替と一斉送信を行う"

    def add_arguments(self, parser):
        parser.add_argument("--path", default=settings.MAIN_CONFIG["MAINTENANCE_PATH"])

    def handle(self, *args, **options):
        path = options["path"]
        handler = FileChangeHandler(path)
        observer = Observer()
        observer.schedule(handler, os.path.dirname(os.path.abspath(path)), recursive=False)
        observer.start()
        self.stdout.write(f"watching {path}")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            observer.stop()
        observer.join()
