"""
Unit tests for CMS pages, page timers, member sites and forms.
"""
import json
from datetime import timedelta

import pytest
from django.urls import reverse
from django.utils import timezone

from member_portal.models import (
    CmsPage,
    Form,
    FormSubmission,
    FriendPageAccess,
    MemberSite,
    MemberSiteContent,
    MemberSiteContentProgress,
)
from step_linebot.models import LineFriend, Tag

pytestmark = pytest.mark.django_db


def post_json(client, name, data):
    return client.post(reverse(f"member_portal:{name}"), data=json.dumps(data), content_type="application/json")


@pytest.fixture
def page(owner):
    return CmsPage.objects.create(owner=owner, title="特典ページ", share_code="gift", is_published=True)


class TestCmsPage:
    """Access checks on a published page, in the order they are applied."""

    def test_friend_can_view(self, client, page, friend):
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": friend.short_uid})
        assert response.status_code == 200
        assert response.json()["title"] == "特典ページ"

    def test_lowercase_uid_rejected(self, client, page, friend):
        # 小文字は形式エラー
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": friend.short_uid.lower()})
        assert response.status_code == 403

    def test_not_found(self, client, page):
        response = post_json(client, "cms_page_view", {"shareCode": "missing"})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_unpublished(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(is_published=False)
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": friend.short_uid})
        assert response.status_code == 423

    def test_passcode(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(require_passcode=True, passcode="1234")
        payload = {"shareCode": "gift", "uid": friend.short_uid}
        assert post_json(client, "cms_page_view", payload).status_code == 401
        assert post_json(client, "cms_page_view", {**payload, "passcode": "0000"}).status_code == 401
        assert post_json(client, "cms_page_view", {**payload, "passcode": "1234"}).status_code == 200

    def test_friends_only_requires_uid(self, client, page):
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": "[UID]"})
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_public_page_without_uid(self, client, page):
        CmsPage.objects.filter(pk=page.pk).update(visibility="public")
        assert post_json(client, "cms_page_view", {"shareCode": "gift"}).status_code == 200

    def test_unknown_friend(self, client, page):
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": "ZZZ999"})
        assert response.status_code == 403

    def test_tag_rules(self, client, owner, page, friend):
        vip = Tag.objects.create(owner=owner, name="VIP")
        banned = Tag.objects.create(owner=owner, name="停止")
        payload = {"shareCode": "gift", "uid": friend.short_uid}

        page.allowed_tags.add(vip)
        assert post_json(client, "cms_page_view", payload).json()["error"] == "tag_required"

        friend.tags.add(vip)
        assert post_json(client, "cms_page_view", payload).status_code == 200

        page.blocked_tags.add(banned)
        friend.tags.add(banned)
        assert post_json(client, "cms_page_view", payload).json()["error"] == "tag_blocked"

    def test_absolute_deadline_hides_page(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(
            timer_enabled=True, timer_deadline=timezone.now() - timedelta(minutes=1), expire_action="hide_page",
        )
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": friend.short_uid})
        assert response.json()["error"] == "page_expired"

    def test_expired_page_kept_public(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(
            timer_enabled=True, timer_deadline=timezone.now() - timedelta(minutes=1), expire_action="keep_public",
        )
        response = post_json(client, "cms_page_view", {"shareCode": "gift", "uid": friend.short_uid})
        assert response.status_code == 200

    def test_internal_timer(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(
            timer_enabled=True, internal_timer=True, timer_mode="per_access",
            timer_duration_seconds=60, expire_action="hide_page",
        )
        payload = {"shareCode": "gift", "uid": friend.short_uid}
        assert post_json(client, "cms_page_view", payload).json()["error"] == "timer_not_started"

        access = FriendPageAccess.objects.create(friend=friend, page=page, timer_start_at=timezone.now())
        assert post_json(client, "cms_page_view", payload).status_code == 200

        access.timer_start_at = timezone.now() - timedelta(minutes=5)
        access.save()
        assert post_json(client, "cms_page_view", payload).json()["error"] == "page_expired"

        access.access_enabled = False
        access.save()
        assert post_json(client, "cms_page_view", payload).json()["error"] == "timer_not_started"

    def test_preview_only_for_owner(self, client, owner, other_owner, page):
        CmsPage.objects.filter(pk=page.pk).update(is_published=False)
        payload = {"isPreview": True, "pageId": str(page.id)}

        assert post_json(client, "cms_page_view", payload).status_code == 404
        client.force_login(other_owner)
        assert post_json(client, "cms_page_view", payload).status_code == 404
        client.force_login(owner)
        assert post_json(client, "cms_page_view", payload).status_code == 200


class TestTimerInfo:

    def test_without_uid(self, client, page):
        body = post_json(client, "get_timer_info", {"pageShareCode": "gift"}).json()
        assert body["success"] is True
        assert body["access_enabled"] is False

    def test_first_access_starts_per_access_timer(self, client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(timer_mode="per_access", timer_duration_seconds=3600)

        body = post_json(client, "get_timer_info", {"pageShareCode": "gift", "uid": friend.short_uid}).json()

        assert body["access_enabled"] is True
        assert body["expired"] is False
        access = FriendPageAccess.objects.get(friend=friend, page=page)
        assert access.access_source == "direct"
        assert access.timer_end_at - access.timer_start_at == timedelta(hours=1)

    def test_expired_access(self, client, page, friend):
        past = timezone.now() - timedelta(hours=2)
        FriendPageAccess.objects.create(
            friend=friend, page=page, timer_start_at=past, timer_end_at=past + timedelta(hours=1), first_access_at=past,
        )
        body = post_json(client, "get_timer_info", {"pageShareCode": "gift", "uid": friend.short_uid}).json()
        assert body["expired"] is True
        assert body["access_enabled"] is False

    def test_unknown_friend(self, client, page):
        response = post_json(client, "get_timer_info", {"pageShareCode": "gift", "uid": "ZZZ999"})
        assert response.status_code == 404


class TestPageAccessManagement:

    def test_grant_and_revoke(self, owner_client, page, friend):
        payload = {"friend_id": str(friend.id), "page_share_code": "gift"}

        granted = post_json(owner_client, "manage_friend_page_access", {**payload, "action": "grant"}).json()
        assert granted["access"]["access_enabled"] is True
        assert granted["access"]["access_source"] == "manual"
        assert granted["access"]["timer_start_at"] is not None

        revoked = post_json(owner_client, "manage_friend_page_access", {**payload, "action": "revoke"}).json()
        assert revoked["access"]["access_enabled"] is False

    def test_reset_timer_with_start(self, owner_client, page, friend):
        CmsPage.objects.filter(pk=page.pk).update(timer_duration_seconds=600)
        body = post_json(owner_client, "manage_friend_page_access", {
            "friend_id": str(friend.id), "page_share_code": "gift", "action": "reset_timer",
            "timer_start_at": "2024-05-01T10:00:00+09:00",
        }).json()
        assert body["access"]["timer_start_at"].startswith("2024-05-01T10:00:00")
        assert body["access"]["timer_end_at"].startswith("2024-05-01T10:10:00")

    def test_start_timer_keeps_running_timer(self, owner_client, page, friend):
        started = timezone.now() - timedelta(minutes=3)
        FriendPageAccess.objects.create(friend=friend, page=page, timer_start_at=started)
        post_json(owner_client, "manage_friend_page_access", {
            "friend_id": str(friend.id), "page_share_code": "gift", "action": "start_timer",
        })
        assert FriendPageAccess.objects.get(friend=friend, page=page).timer_start_at == started

    def test_other_owner_cannot_manage(self, client, other_owner, page, friend):
        client.force_login(other_owner)
        response = post_json(client, "manage_friend_page_access", {
            "friend_id": str(friend.id), "page_share_code": "gift", "action": "grant",
        })
        assert response.status_code == 404

    def test_invalid_start(self, owner_client, page, friend):
        response = post_json(owner_client, "manage_friend_page_access", {
            "friend_id": str(friend.id), "page_share_code": "gift", "action": "grant", "timer_start_at": "yesterday",
        })
        assert response.status_code == 400

    def test_unknown_action(self, owner_client, page, friend):
        response = post_json(owner_client, "manage_friend_page_access", {
            "friend_id": str(friend.id), "page_share_code": "gift", "action": "extend",
        })
        assert response.status_code == 400

    def test_timer_settings_recompute_end(self, owner_client, page, friend):
        start = timezone.now()
        FriendPageAccess.objects.create(friend=friend, page=page, timer_start_at=start)
        FriendPageAccess.objects.create(
            friend=LineFriend.objects.create(owner=friend.owner, line_user_id="U" + "b" * 32),
            page=page, timer_start_at=start, access_enabled=False,
        )

        body = post_json(owner_client, "update_page_timer_settings", {"pageShareCode": "gift", "timerDurationSeconds": 120}).json()

        assert body == {"success": True, "updatedCount": 1}
        access = FriendPageAccess.objects.get(friend=friend, page=page)
        assert access.timer_end_at == start + timedelta(seconds=120)

    def test_timer_settings_validation(self, owner_client, page):
        assert post_json(owner_client, "update_page_timer_settings", {"pageShareCode": "gift"}).status_code == 400
        response = post_json(owner_client, "update_page_timer_settings", {"pageShareCode": "gift", "timerDurationSeconds": "x"})
        assert response.status_code == 400


class TestMemberSite:

    @pytest.fixture
    def site(self, owner):
        site = MemberSite.objects.create(owner=owner, name="講座", slug="course", is_published=True)
        MemberSiteContent.objects.create(site=site, title="第1回", sort_order=1)
        MemberSiteContent.objects.create(site=site, title="第2回", sort_order=2)
        MemberSiteContent.objects.create(site=site, title="下書き", is_published=False)
        return site

    def get(self, client, **params):
        return client.get(reverse("member_portal:member_site_view"), params)

    def test_contents_with_progress(self, client, site, friend):
        first = site.contents.get(title="第1回")
        MemberSiteContentProgress.objects.create(content=first, friend=friend, status="completed", progress_percentage=100)

        body = self.get(client, slug="course", uid=friend.short_uid).json()

        assert [c["title"] for c in body["content"]] == ["第1回", "第2回"]
        assert body["content"][0]["progress_status"] == "completed"
        assert body["content"][1]["progress_percentage"] == 0

    @pytest.mark.parametrize("params, status, code", [
        ({}, 400, "BAD_REQUEST"),
        ({"slug": "missing"}, 404, "NOT_FOUND"),
        ({"slug": "course"}, 401, "UID_AUTH_FAILED"),
        ({"slug": "course", "uid": "ZZZ999"}, 401, "UID_AUTH_FAILED"),
    ])
    def test_errors(self, client, site, params, status, code):
        response = self.get(client, **params)
        assert response.status_code == status
        assert response.json()["errorCode"] == code

    def test_tag_and_passcode(self, client, owner, site, friend):
        vip = Tag.objects.create(owner=owner, name="VIP")
        site.allowed_tags.add(vip)
        assert self.get(client, slug="course", uid=friend.short_uid).json()["errorCode"] == "TAG_AUTH_FAILED"

        friend.tags.add(vip)
        MemberSite.objects.filter(pk=site.pk).update(require_passcode=True, passcode="pw")
        assert self.get(client, slug="course", uid=friend.short_uid).json()["errorCode"] == "PASSCODE_REQUIRED"
        assert self.get(client, slug="course", uid=friend.short_uid, passcode="no").json()["errorCode"] == "INVALID_PASSCODE"
        assert self.get(client, slug="course", uid=friend.short_uid, passcode="pw").json()["success"] is True

    def test_progress_update(self, client, site, friend):
        content = site.contents.get(title="第1回")
        payload = {"slug": "course", "uid": friend.short_uid, "contentId": str(content.id), "completed": True}

        body = post_json(client, "member_site_progress", payload).json()

        assert body == {"success": True, "status": "completed", "progress_percentage": 100}
        progress = MemberSiteContentProgress.objects.get(content=content, friend=friend)
        assert progress.completed_at is not None

        post_json(client, "member_site_progress", {**payload, "completed": False})
        progress.refresh_from_db()
        assert (progress.status, progress.completed_at) == ("incomplete", None)

    def test_progress_validation(self, client, site, friend):
        response = post_json(client, "member_site_progress", {
            "slug": "course", "uid": friend.short_uid, "contentId": "x", "completed": "yes",
        })
        assert response.status_code == 400
        response = post_json(client, "member_site_progress", {
            "slug": "course", "uid": friend.short_uid, "contentId": "not-a-uuid", "completed": True,
        })
        assert response.json()["errorCode"] == "CONTENT_NOT_FOUND"
        assert client.get(reverse("member_portal:member_site_progress")).status_code == 405


class TestDeleteForm:

    def test_deletes_form_and_submissions(self, owner_client, owner, friend):
        form = Form.objects.create(owner=owner, name="アンケート")
        FormSubmission.objects.create(form=form, friend=friend, data={"q1": "yes"})

        response = post_json(owner_client, "delete_form", {"form_id": str(form.id)})

        assert response.json() == {"success": True}
        assert not Form.objects.exists()
        assert not FormSubmission.objects.exists()

    def test_other_owner(self, client, other_owner, owner):
        form = Form.objects.create(owner=owner, name="アンケート")
        client.force_login(other_owner)
        assert post_json(client, "delete_form", {"form_id": str(form.id)}).status_code == 404
        assert Form.objects.exists()

    def test_form_id_required(self, owner_client):
        assert post_json(owner_client, "delete_form", {}).status_code == 400
