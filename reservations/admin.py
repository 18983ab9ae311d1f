"""
Reservations — Django Admin Configuration

Read-only; status changes go through ReservationService so they are audited.

@file reservations/admin.py
"""

from django.contrib import admin
from django.utils.html import format_html
from django.utils.translation import gettext_lazy as _

from .models import Reservation


@admin.register(Reservation)
class ReservationAdmin(admin.ModelAdmin):
    list_display = (
        'delivery_date', 'product_code', 'product_name', 'order_id',
        'quantity', 'original_quantity', 'status_badge', 'batch',
    )
    list_filter = ('status', 'delivery_date')
    search_fields = ('product_name', 'product_code', 'order_id')
    readonly_fields = (
        'id', 'product_id', 'product_name', 'product_code', 'batch', 'order_id',
        'delivery_date', 'quantity', 'original_quantity', 'status',
        'created_at', 'updated_at', 'created_by', 'updated_by',
    )
    list_select_related = ('batch',)
    date_hierarchy = 'delivery_date'
    show_full_result_count = False
    list_per_page = 50
    ordering = ('delivery_date',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.display(description=_('Status'))
    def status_badge(self, obj):
        colors = {'ACTIVE': '#3b82f6', 'FULFILLED': '#22c55e', 'CANCELLED': '#6b7280'}
        color = colors.get(obj.status, '#6b7280')
        return format_html(
            '<span style="background:{};color:#fff;padding:2px 8px;'
            'border-radius:4px;font-size:11px;font-weight:600;">{}</span>',
            color, obj.get_status_display(),
        )
