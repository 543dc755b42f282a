import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('catalog', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='GatewaySetting',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway_name', models.CharField(max_length=32, unique=True)),
                ('merchant_id', models.CharField(blank=True, default='', max_length=64)),
                ('merchant_upi_id', models.CharField(blank=True, default='', max_length=128)),
                ('merchant_name', models.CharField(blank=True, default='', max_length=128)),
                ('salt_key', models.CharField(blank=True, default='', max_length=255)),
                ('salt_index', models.CharField(default='1', max_length=8)),
                ('currency', models.CharField(default='INR', max_length=8)),
                ('callback_path', models.CharField(default='/pg/v1/status', max_length=128)),
                ('api_base_url', models.URLField(blank=True, default='')),
                ('test_mode', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('product_kind', models.CharField(choices=[('course', 'Course'), ('test_series', 'Test series'), ('qbank', 'Question bank'), ('webinar', 'Webinar')], max_length=16)),
                ('product_id', models.CharField(max_length=64)),
                ('product_name', models.CharField(blank=True, default='', max_length=255)),
                ('price', models.DecimalField(decimal_places=2, max_digits=12)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('successful', 'Successful'), ('failed', 'Failed'), ('refunded', 'Refunded')], db_index=True, default='pending', max_length=16)),
                ('gateway_name', models.CharField(blank=True, default='', max_length=32)),
                ('gateway_transaction_ref', models.CharField(blank=True, default='', max_length=128)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='orders', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ('-created_at',),
                'indexes': [models.Index(fields=['product_kind', 'product_id'], name='payments_order_product_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('status', 'pending')), fields=('user', 'product_kind', 'product_id'), name='uniq_pending_order_per_product')],
            },
        ),
        migrations.CreateModel(
            name='PaymentAttempt',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default='INR', max_length=8)),
                ('gateway_name', models.CharField(db_index=True, max_length=32)),
                ('transaction_ref', models.CharField(max_length=64, unique=True)),
                ('gateway_transaction_ref', models.CharField(blank=True, default='', max_length=128)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('successful', 'Successful'), ('failed', 'Failed')], db_index=True, default='pending', max_length=16)),
                ('last_gateway_code', models.CharField(blank=True, default='', max_length=64)),
                ('last_gateway_state', models.CharField(blank=True, default='', max_length=64)),
                ('last_gateway_payload', models.JSONField(blank=True, null=True)),
                ('verified_at', models.DateTimeField(blank=True, null=True)),
                ('admin_notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payment_attempts', to='payments.order')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payment_attempts', to=settings.AUTH_USER_MODEL)),
                ('verified_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ('-created_at',),
                'constraints': [models.UniqueConstraint(condition=models.Q(('status', 'pending')), fields=('order',), name='uniq_pending_attempt_per_order')],
            },
        ),
    ]
