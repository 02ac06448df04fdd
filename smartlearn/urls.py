"""
URL configuration for the smartlearn project.

The homework engine exposes its REST API under ``/api/``; everything else
(authentication, pages, AI chat) is served by other services.
"""
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include(('homework.api.urls', 'homework'), namespace='homework')),
]
