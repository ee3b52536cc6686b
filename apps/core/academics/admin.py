from django.contrib import admin

from .models import Discipline, Enrollment


@admin.register(Discipline)
class DisciplineAdmin(admin.ModelAdmin):
    list_display = ('name', 'base_fee', 'enrollment_fee', 'drop_in_price', 'trial_price', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('name',)


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ('student', 'discipline', 'discount', 'enrolled_on', 'withdrawn_on', 'status')
    list_filter = ('status', 'discipline')
    search_fields = ('student__first_name', 'student__last_name', 'discipline__name')
    autocomplete_fields = ('student',)
