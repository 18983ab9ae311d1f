"""
Stock — Django Admin Configuration

Read-only views of the movement ledger, the stock aggregate and inbound
announcements. Movements are INSERT ONLY; aggregates are written only by
the unit of work.

@file stock/admin.py
"""

from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from .models import InboundDelivery, StockAggregate, StockMovement


class ReadOnlyAdmin(admin.ModelAdmin):
    show_full_result_count = False
    list_per_page = 50

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(StockMovement)
class StockMovementAdmin(ReadOnlyAdmin):
    list_display = (
        'timestamp', 'movement_type', 'product_code', 'product_name',
        'batch', 'zone', 'quantity', 'order_id', 'actor',
    )
    list_filter = ('movement_type', 'zone', 'is_frozen', 'timestamp')
    search_fields = ('product_name', 'product_code', 'note', 'order_id')
    list_select_related = ('batch', 'actor')
    date_hierarchy = 'timestamp'
    ordering = ('-timestamp',)

    fieldsets = (
        (_('Movement'), {
            'fields': ('id', 'timestamp', 'movement_type', 'zone', 'quantity', 'note'),
        }),
        (_('Product & Batch'), {
            'fields': (
                'product_id', 'product_name', 'product_code', 'batch',
                'expiry_date', 'slaughter_date', 'is_frozen',
            ),
        }),
        (_('Reference'), {
            'fields': ('order_id', 'reference_movement', 'actor'),
        }),
    )


@admin.register(StockAggregate)
class StockAggregateAdmin(ReadOnlyAdmin):
    list_display = (
        'product_code', 'product_name', 'batch', 'zone',
        'available', 'reserved', 'in_transit', 'updated_at',
    )
    list_filter = ('zone',)
    search_fields = ('product_name', 'product_code')
    list_select_related = ('batch',)
    ordering = ('product_name', 'zone')


@admin.register(InboundDelivery)
class InboundDeliveryAdmin(ReadOnlyAdmin):
    list_display = (
        'expected_on', 'product_code', 'product_name', 'supplier_name',
        'zone', 'quantity', 'quantity_received', 'status',
    )
    list_filter = ('status', 'zone', 'expected_on')
    search_fields = ('product_name', 'product_code', 'supplier_name')
    list_select_related = ('batch',)
    date_hierarchy = 'expected_on'
    ordering = ('expected_on',)
