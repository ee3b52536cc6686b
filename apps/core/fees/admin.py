from django.contrib import admin

from .models import EnrollmentFee, LineItem, MonthlyFee, Payment, ProcessRun


class ReadOnlyFinancialAdmin(admin.ModelAdmin):
    """View-only admin. Billing state changes go through the fees services."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class LineItemInline(admin.TabularInline):
    model = LineItem
    fk_name = 'payment'
    extra = 0
    can_delete = False
    fields = (
        'kind',
        'description',
        'quantity',
        'base_amount',
        'discount_amount',
        'surcharge_amount',
        'initial_amount',
        'collected_amount',
        'pending_amount',
        'is_settled',
        'is_annulled',
        'is_carried_over',
    )
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(ReadOnlyFinancialAdmin):
    list_display = (
        'id',
        'student',
        'payment_date',
        'due_date',
        'kind',
        'state',
        'payment_method',
        'initial_total',
        'collected_total',
        'pending_total',
    )
    list_filter = ('state', 'kind', 'payment_method', 'payment_date')
    search_fields = ('student__first_name', 'student__last_name', 'student__document_number')
    readonly_fields = (
        'base_total',
        'initial_total',
        'collected_total',
        'pending_total',
        'previous_payment',
        'version',
    )
    inlines = [LineItemInline]


@admin.register(LineItem)
class LineItemAdmin(ReadOnlyFinancialAdmin):
    list_display = ('id', 'payment', 'kind', 'description', 'initial_amount', 'pending_amount', 'is_settled')
    list_filter = ('kind', 'is_settled', 'is_annulled', 'is_carried_over')
    search_fields = ('description', 'payment__student__first_name', 'payment__student__last_name')
    readonly_fields = ('version', 'carried_from')


@admin.register(MonthlyFee)
class MonthlyFeeAdmin(ReadOnlyFinancialAdmin):
    list_display = ('description', 'period_start', 'total_amount', 'paid_amount', 'state', 'paid_on')
    list_filter = ('state', 'period_start')
    search_fields = ('description', 'enrollment__student__first_name', 'enrollment__student__last_name')


@admin.register(EnrollmentFee)
class EnrollmentFeeAdmin(ReadOnlyFinancialAdmin):
    list_display = ('student', 'year', 'is_paid', 'paid_on')
    list_filter = ('year', 'is_paid')
    search_fields = ('student__first_name', 'student__last_name')


@admin.register(ProcessRun)
class ProcessRunAdmin(ReadOnlyFinancialAdmin):
    list_display = ('process', 'last_run_on', 'last_period_start', 'updated_at')
