from django.contrib import admin

from .models import Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ('full_name', 'document_number', 'credit_balance', 'joined_on', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('first_name', 'last_name', 'document_number')
