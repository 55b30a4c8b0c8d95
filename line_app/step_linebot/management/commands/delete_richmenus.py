"""
オーナーのLINEに登録中のリッチメニューを一括削除
python manage.py delete_richmenus <owner_id>
"""
from django.core.management.base import BaseCommand, CommandError

from step_linebot.models import RichMenu
from step_linebot.utils import richmenu
from step_linebot.utils.db_handler import get_profile
from step_linebot.utils.errors import LineApiError


class Command(BaseCommand):
    help = "オーナーのリッチメニューをLINEから一括削除する"

    def add_arguments(self, parser):
        parser.add_argument("owner_id", type=int)

    def handle(self, *args, **options):
        profile = get_profile(options["owner_id"])
        if profile is None:
            raise CommandError(f"Profile not found: {options['owner_id']}")
        access_token = profile.get_credential("line_channel_access_token")
        if not access_token:
            raise CommandError("LINE access token is not configured")

        try:
            richmenus = richmenu.list_richmenus(access_token)
        except LineApiError as e:
            raise CommandError(str(e)) from e
        self.stdout.write(f"{len(richmenus)} rich menus found.")

        for rm in richmenus:
            richmenu_id = rm["richMenuId"]
            try:
                richmenu.delete_richmenu(access_token, richmenu_id)
            except LineApiError as e:
                self.stderr.write(f"Failed {richmenu_id}: {e}")
                continue
            RichMenu.objects.filter(owner_id=profile.user_id, line_rich_menu_id=richmenu_id).update(
                line_rich_menu_id="", is_default=False
            )
            self.stdout.write(f"Deleted {richmenu_id}")
