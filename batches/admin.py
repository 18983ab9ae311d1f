"""
Batches — Django Admin Configuration

Batch registry with expiry colour coding. Corrections made here go
through the audit signals; product and deletion are locked.

@file batches/admin.py
"""

from django.contrib import admin
from django.utils.html import format_html
from django.utils.translation import gettext_lazy as _

from .models import Batch


def _render_expiry_badge(obj):
    days = obj.days_to_expiry
    if days <= 0:
        color, label = '#dc2626', 'EXPIRED' if days == 0 else f'EXPIRED ({abs(days)}d ago)'
    elif days <= 5:
        color, label = '#f97316', f'{days}d left'
    else:
        color, label = '#22c55e', f'{days}d left'
    return format_html(
        '<span style="background:{};color:#fff;padding:2px 8px;'
        'border-radius:4px;font-size:11px;font-weight:600;">{}</span>',
        color, label,
    )


@admin.register(Batch)
class BatchAdmin(admin.ModelAdmin):
    list_display = (
        'product_code', 'product_name', 'expiry_date', 'expiry_badge',
        'slaughter_date', 'is_frozen', 'supplier_name', 'created_at',
    )
    list_filter = ('is_frozen', 'expiry_date')
    search_fields = ('product_name', 'product_code', 'supplier_name', 'id')
    readonly_fields = (
        'id', 'product_id', 'product_name', 'product_code', 'supplier_name',
        'expiry_badge', 'created_at', 'updated_at', 'created_by', 'updated_by',
    )
    date_hierarchy = 'expiry_date'
    show_full_result_count = False
    list_per_page = 50
    ordering = ('expiry_date',)

    fieldsets = (
        (_('Product'), {
            'fields': ('id', 'product_id', 'product_name', 'product_code'),
        }),
        (_('Batch'), {
            'fields': ('expiry_date', 'expiry_badge', 'slaughter_date', 'is_frozen'),
        }),
        (_('Supplier'), {
            'fields': ('supplier_id', 'supplier_name'),
        }),
        (_('Audit'), {
            'fields': ('created_at', 'updated_at', 'created_by', 'updated_by'),
            'classes': ('collapse',),
        }),
    )

    def has_add_permission(self, request):
        return False  # batches are created by goods receipt or BatchService

    def has_delete_permission(self, request, obj=None):
        return False

    def save_model(self, request, obj, form, change):
        obj.updated_by = request.user
        obj._current_user = request.user
        super().save_model(request, obj, form, change)

    @admin.display(description=_('Expiry'))
    def expiry_badge(self, obj):
        if not obj.pk:
            return '—'
        return _render_expiry_badge(obj)
