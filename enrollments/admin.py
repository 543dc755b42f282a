from django.contrib import admin

from .models import CourseEnrollment, QbankEnrollment, TestSeriesEnrollment, WebinarEnrollment


class EnrollmentAdmin(admin.ModelAdmin):
    list_filter = ("status", "granted_at")
    search_fields = ("user__username", "user__email")
    readonly_fields = ("granted_at", "payment_attempt")

    def get_list_display(self, request):
        return ("user", self.model.product_field, "status", "granted_at", "payment_attempt")


for model in (CourseEnrollment, TestSeriesEnrollment, QbankEnrollment, WebinarEnrollment):
    admin.site.register(model, EnrollmentAdmin)
