from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='DemoCase',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('case_name', models.CharField(max_length=255)),
                ('case_type', models.CharField(choices=[('CLIQ System', 'CLIQ System'), ('Aperio Kit', 'Aperio Kit'), ('SMARTair Package', 'SMARTair Package'), ('Yale Kit', 'Yale Kit'), ('Custom', 'Custom')], default='Custom', max_length=30)),
                ('software_version', models.CharField(blank=True, default='', max_length=100)),
                ('serial_number', models.CharField(blank=True, default='', max_length=100)),
                ('base_location', models.CharField(blank=True, default='', max_length=255)),
                ('base_address', models.CharField(blank=True, default='', max_length=500)),
                ('description', models.TextField(blank=True, default='')),
                ('notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Demo Case',
                'verbose_name_plural': 'Demo Cases',
                'ordering': ['case_name'],
            },
        ),
        migrations.CreateModel(
            name='ActivityLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(max_length=100)),
                ('details', models.TextField(blank=True, default='')),
                ('user_email', models.CharField(blank=True, default='', max_length=255)),
                ('entity_type', models.CharField(max_length=50)),
                ('entity_id', models.CharField(blank=True, default='', max_length=64)),
                ('created_date', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['-created_date'],
            },
        ),
        migrations.CreateModel(
            name='TeamMember',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('first_name', models.CharField(max_length=150)),
                ('last_name', models.CharField(max_length=150)),
                ('email', models.EmailField(max_length=254, unique=True)),
                ('role', models.CharField(choices=[('member', 'Member'), ('admin', 'Admin')], default='member', max_length=20)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive')], default='active', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['first_name', 'last_name'],
            },
        ),
        migrations.CreateModel(
            name='Product',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('article_reference', models.CharField(max_length=100)),
                ('brand', models.CharField(max_length=255)),
                ('description', models.TextField(blank=True, default='')),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('is_individual_item', models.BooleanField(default=False)),
                ('item_identifier', models.CharField(blank=True, default='', max_length=120)),
                ('serial_number', models.CharField(blank=True, max_length=100, null=True)),
                ('purchase_value', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('photo_url', models.URLField(blank=True, default='', max_length=500)),
                ('belongs_to_case', models.BooleanField(default=False)),
                ('can_lend_separately', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('demo_case', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='products', to='demokit.democase')),
                ('parent_article', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='items', to='demokit.product')),
            ],
            options={
                'ordering': ['article_reference', 'item_identifier'],
            },
        ),
        migrations.CreateModel(
            name='Loan',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('product_article', models.CharField(blank=True, default='', max_length=120)),
                ('product_description', models.TextField(blank=True, default='')),
                ('kit_name', models.CharField(blank=True, default='', max_length=255)),
                ('customer_name', models.CharField(max_length=255)),
                ('customer_address', models.CharField(blank=True, max_length=500, null=True)),
                ('responsible_email', models.CharField(blank=True, default='', max_length=255)),
                ('responsible_name', models.CharField(blank=True, default='', max_length=255)),
                ('lent_by_email', models.CharField(blank=True, default='', max_length=255)),
                ('lent_date', models.DateField()),
                ('expected_return_date', models.DateField(blank=True, null=True)),
                ('actual_return_date', models.DateField(blank=True, null=True)),
                ('status', models.CharField(choices=[('out', 'Out'), ('sample', 'Sample'), ('returned', 'Returned')], default='out', max_length=20)),
                ('notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('product', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='loans', to='demokit.product')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
