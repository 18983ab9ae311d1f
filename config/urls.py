"""
FreshStock — Root URL Configuration

Only the Django admin is routed; the inventory core is exposed through
its service layer.

@file config/urls.py
"""

from django.contrib import admin
from django.urls import path

admin.site.site_header = 'FreshStock Administration'
admin.site.site_title = 'FreshStock'
admin.site.index_title = 'Perishable Goods Inventory'

urlpatterns = [
    path('admin/', admin.site.urls),
]
