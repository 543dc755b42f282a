import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

STATUS_CHOICES = [('active', 'Active'), ('completed', 'Completed'), ('dropped', 'Dropped')]


def _base_fields():
    return [
        ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
        ('status', models.CharField(choices=STATUS_CHOICES, default='active', max_length=16)),
        ('granted_at', models.DateTimeField(default=django.utils.timezone.now)),
        ('payment_attempt', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='+', to='payments.paymentattempt')),
    ]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('catalog', '0001_initial'),
        ('payments', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='CourseEnrollment',
            fields=_base_fields() + [
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='courseenrollments', to=settings.AUTH_USER_MODEL)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='catalog.course')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('user', 'course'), name='uniq_course_enrollment')],
            },
        ),
        migrations.CreateModel(
            name='TestSeriesEnrollment',
            fields=_base_fields() + [
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='testseriesenrollments', to=settings.AUTH_USER_MODEL)),
                ('test_series', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='catalog.testseries')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('user', 'test_series'), name='uniq_test_series_enrollment')],
            },
        ),
        migrations.CreateModel(
            name='QbankEnrollment',
            fields=_base_fields() + [
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='qbankenrollments', to=settings.AUTH_USER_MODEL)),
                ('qbank', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='catalog.questionbank')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('user', 'qbank'), name='uniq_qbank_enrollment')],
            },
        ),
        migrations.CreateModel(
            name='WebinarEnrollment',
            fields=_base_fields() + [
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='webinarenrollments', to=settings.AUTH_USER_MODEL)),
                ('webinar', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='catalog.webinar')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('user', 'webinar'), name='uniq_webinar_enrollment')],
            },
        ),
    ]
