from django.contrib import admin

from .models import Course, QuestionBank, TestSeries, Webinar


@admin.register(Course, TestSeries, QuestionBank)
class NamedProductAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "price", "is_published", "updated_at")
    search_fields = ("id", "name")
    list_filter = ("is_published",)


@admin.register(Webinar)
class WebinarAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "price", "starts_at", "is_published")
    search_fields = ("id", "title")
    list_filter = ("is_published",)
