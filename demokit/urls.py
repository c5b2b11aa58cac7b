from django.urls import path
from django.views.generic import RedirectView
from . import views

app_name = 'demokit'

urlpatterns = [
    path('', RedirectView.as_view(url='/api/report/', permanent=False), name='home'),

    # Identity
    path('api/me/', views.me, name='me'),
    path('api/logout/', views.logout_api, name='logout_api'),

    # Products
    path('api/products/', views.product_list, name='product_list'),
    path('api/products/create/', views.product_create, name='product_create'),
    path('api/products/<int:product_id>/edit/', views.product_edit, name='product_edit'),
    path('api/products/<int:product_id>/delete/', views.product_delete, name='product_delete'),
    path('api/products/<int:product_id>/availability/', views.product_availability, name='product_availability'),

    # Item tracking
    path('api/products/<int:product_id>/split/', views.product_split, name='product_split'),
    path('api/products/<int:product_id>/merge/', views.product_merge, name='product_merge'),
    path('api/items/<int:item_id>/serial/', views.item_serial, name='item_serial'),

    # Demo cases
    path('api/demo-cases/', views.demo_case_list, name='demo_case_list'),
    path('api/demo-cases/create/', views.demo_case_create, name='demo_case_create'),
    path('api/demo-cases/<int:case_id>/edit/', views.demo_case_edit, name='demo_case_edit'),
    path('api/demo-cases/<int:case_id>/delete/', views.demo_case_delete, name='demo_case_delete'),
    path('api/demo-cases/<int:case_id>/lend/', views.demo_case_lend, name='demo_case_lend'),

    # Loans
    path('api/loans/', views.loan_list, name='loan_list'),
    path('api/loans/create/', views.loan_create, name='loan_create'),
    path('api/loans/<int:loan_id>/return/', views.loan_return, name='loan_return'),
    path('api/loans/bulk-return/', views.loan_bulk_return, name='loan_bulk_return'),
    path('api/loans/fix-case-data/', views.loan_fix_case_data, name='loan_fix_case_data'),

    # Reports & alerts
    path('api/overdue/', views.overdue_loans_api, name='overdue_loans'),
    path('api/report/', views.report_api, name='report'),

    # Team
    path('api/team/', views.team_list, name='team_list'),
    path('api/team/create/', views.team_create, name='team_create'),
    path('api/team/<int:member_id>/edit/', views.team_edit, name='team_edit'),
    path('api/team/<int:member_id>/toggle-status/', views.team_toggle_status, name='team_toggle_status'),

    # Bulk import
    path('api/import/preview/', views.import_preview, name='import_preview'),
    path('api/import/', views.import_run, name='import_run'),

    # Activity log
    path('api/activity/', views.activity_list, name='activity_list'),
    path('export/activity-log.csv', views.export_activity_log, name='export_activity_log'),
]
