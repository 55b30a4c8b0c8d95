from django.contrib import admin
from .models import CmsPage, Form, FormSubmission, FriendPageAccess, MemberSite, MemberSiteCategory, MemberSiteContent


@admin.register(CmsPage)
class CmsPageAdmin(admin.ModelAdmin):
    list_display = ('title', 'share_code', 'owner', 'visibility', 'is_published', 'timer_enabled', 'timer_mode')
    list_filter = ('visibility', 'is_published', 'timer_enabled', 'timer_mode')
    search_fields = ('title', 'share_code')
    filter_horizontal = ('allowed_tags', 'blocked_tags')


@admin.register(FriendPageAccess)
class FriendPageAccessAdmin(admin.ModelAdmin):
    list_display = ('friend', 'page', 'access_enabled', 'access_source', 'timer_start_at', 'timer_end_at')
    list_filter = ('access_enabled', 'access_source')
    search_fields = ('friend__short_uid', 'page__share_code')


class MemberSiteCategoryInline(admin.TabularInline):
    model = MemberSiteCategory
    extra = 0


@admin.register(MemberSite)
class MemberSiteAdmin(admin.ModelAdmin):
    list_display = ('name', 'slug', 'owner', 'is_published', 'require_passcode')
    list_filter = ('is_published',)
    search_fields = ('name', 'slug')
    filter_horizontal = ('allowed_tags', 'blocked_tags')
    inlines = [MemberSiteCategoryInline]


@admin.register(MemberSiteContent)
class MemberSiteContentAdmin(admin.ModelAdmin):
    list_display = ('title', 'site', 'category', 'is_published', 'sort_order')
    list_filter = ('is_published', 'content_type')
    ordering = ('site', 'sort_order')


@admin.register(Form)
class FormAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'is_public', 'created_at')
    search_fields = ('name',)


@admin.register(FormSubmission)
class FormSubmissionAdmin(admin.ModelAdmin):
    list_display = ('form', 'friend', 'submitted_at')
    ordering = ('-submitted_at',)
    date_hierarchy = 'submitted_at'
