from django.db import models
from django.utils import timezone


class DemoCase(models.Model):
    CASE_TYPE_CHOICES = [
        ('CLIQ System', 'CLIQ System'),
        ('Aperio Kit', 'Aperio Kit'),
        ('SMARTair Package', 'SMARTair Package'),
        ('Yale Kit', 'Yale Kit'),
        ('Custom', 'Custom'),
    ]

    case_name = models.CharField(max_length=255)
    case_type = models.CharField(max_length=30, choices=CASE_TYPE_CHOICES, default='Custom')
    software_version = models.CharField(max_length=100, blank=True, default='')
    serial_number = models.CharField(max_length=100, blank=True, default='')
    base_location = models.CharField(max_length=255, blank=True, default='')
    base_address = models.CharField(max_length=500, blank=True, default='')
    description = models.TextField(blank=True, default='')
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['case_name']
        verbose_name = "Demo Case"
        verbose_name_plural = "Demo Cases"

    def __str__(self):
        return self.case_name


class Product(models.Model):
    article_reference = models.CharField(max_length=100)
    brand = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    quantity = models.PositiveIntegerField(default=1)

    # Per-unit tracking: an individual item is one physical unit of its parent article
    is_individual_item = models.BooleanField(default=False)
    parent_article = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='items'
    )
    item_identifier = models.CharField(max_length=120, blank=True, default='')
    serial_number = models.CharField(max_length=100, null=True, blank=True)

    purchase_value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    photo_url = models.URLField(max_length=500, blank=True, default='')

    # Demo case membership
    belongs_to_case = models.BooleanField(default=False)
    demo_case = models.ForeignKey(
        DemoCase, on_delete=models.SET_NULL, null=True, blank=True, related_name='products'
    )
    can_lend_separately = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['article_reference', 'item_identifier']

    def __str__(self):
        if self.is_individual_item:
            return self.item_identifier or self.article_reference
        return f"{self.article_reference} - {self.brand}"

    @property
    def label(self):
        return self.item_identifier if self.is_individual_item else self.article_reference


class Loan(models.Model):
    STATUS_CHOICES = [
        ('out', 'Out'),
        ('sample', 'Sample'),
        ('returned', 'Returned'),
    ]
    ACTIVE_STATUSES = ('out', 'sample')

    # SET_NULL keeps the loan history when a product record goes away
    product = models.ForeignKey(
        Product, on_delete=models.SET_NULL, null=True, blank=True, related_name='loans'
    )
    # Snapshots taken when the loan is created; not kept in sync with later product edits
    product_article = models.CharField(max_length=120, blank=True, default='')
    product_description = models.TextField(blank=True, default='')
    kit_name = models.CharField(max_length=255, blank=True, default='')

    customer_name = models.CharField(max_length=255)
    customer_address = models.CharField(max_length=500, null=True, blank=True)
    responsible_email = models.CharField(max_length=255, blank=True, default='')
    responsible_name = models.CharField(max_length=255, blank=True, default='')
    lent_by_email = models.CharField(max_length=255, blank=True, default='')

    lent_date = models.DateField()
    expected_return_date = models.DateField(null=True, blank=True)
    actual_return_date = models.DateField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='out')
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.product_article} to {self.customer_name} ({self.status})"

    @property
    def is_active(self):
        return self.status in self.ACTIVE_STATUSES

    @property
    def is_overdue(self):
        return (
            self.status == 'out'
            and self.expected_return_date is not None
            and self.expected_return_date < timezone.localdate()
        )


class ActivityLog(models.Model):
    """Append-only audit trail. Rows are never updated or deleted."""
    action = models.CharField(max_length=100)
    details = models.TextField(blank=True, default='')
    user_email = models.CharField(max_length=255, blank=True, default='')
    entity_type = models.CharField(max_length=50)
    entity_id = models.CharField(max_length=64, blank=True, default='')
    created_date = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_date']

    def __str__(self):
        return f"{self.action} by {self.user_email or 'system'} @ {self.created_date}"


class TeamMember(models.Model):
    ROLE_CHOICES = [
        ('member', 'Member'),
        ('admin', 'Admin'),
    ]
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    ]

    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    email = models.EmailField(unique=True)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default='member')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['first_name', 'last_name']

    def __str__(self):
        return f"{self.full_name} <{self.email}>"

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()
