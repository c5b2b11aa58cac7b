from django.contrib import admin
from .models import ActivityLog, DemoCase, Loan, Product, TeamMember

@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['article_reference', 'item_identifier', 'brand', 'quantity', 'is_individual_item', 'demo_case', 'can_lend_separately']
    list_filter = ['is_individual_item', 'belongs_to_case', 'can_lend_separately', 'brand']
    search_fields = ['article_reference', 'item_identifier', 'brand', 'description', 'serial_number']
    readonly_fields = ['item_identifier', 'parent_article']

@admin.register(DemoCase)
class DemoCaseAdmin(admin.ModelAdmin):
    list_display = ['case_name', 'case_type', 'base_location', 'updated_at']
    list_filter = ['case_type']
    search_fields = ['case_name', 'base_location', 'serial_number']

@admin.register(Loan)
class LoanAdmin(admin.ModelAdmin):
    list_display = ['product_article', 'customer_name', 'kit_name', 'status', 'responsible_name', 'lent_date', 'expected_return_date', 'actual_return_date']
    list_filter = ['status', 'kit_name']
    search_fields = ['product_article', 'customer_name', 'responsible_email', 'kit_name']
    readonly_fields = ['product_article', 'product_description', 'lent_date', 'lent_by_email', 'created_at']

@admin.register(ActivityLog)
class ActivityLogAdmin(admin.ModelAdmin):
    list_display = ['action', 'entity_type', 'user_email', 'created_date']
    list_filter = ['action', 'entity_type']
    search_fields = ['details', 'user_email']
    readonly_fields = ['action', 'details', 'user_email', 'entity_type', 'entity_id', 'created_date']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

@admin.register(TeamMember)
class TeamMemberAdmin(admin.ModelAdmin):
    list_display = ['first_name', 'last_name', 'email', 'role', 'status']
    list_filter = ['role', 'status']
    search_fields = ['first_name', 'last_name', 'email']
