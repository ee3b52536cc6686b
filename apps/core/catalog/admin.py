from django.contrib import admin

from .models import Concept, Discount, PaymentMethod, StockItem, SubConcept, Surcharge, SurchargeThreshold


@admin.register(Discount)
class DiscountAdmin(admin.ModelAdmin):
    list_display = ('description', 'percentage', 'fixed_amount', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('description',)


class SurchargeThresholdInline(admin.TabularInline):
    model = SurchargeThreshold
    extra = 1


@admin.register(Surcharge)
class SurchargeAdmin(admin.ModelAdmin):
    list_display = ('description', 'fixed_amount', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('description',)
    inlines = [SurchargeThresholdInline]


@admin.register(StockItem)
class StockItemAdmin(admin.ModelAdmin):
    list_display = ('name', 'price', 'quantity', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('name', 'barcode')


@admin.register(SubConcept)
class SubConceptAdmin(admin.ModelAdmin):
    search_fields = ('description',)


@admin.register(Concept)
class ConceptAdmin(admin.ModelAdmin):
    list_display = ('description', 'price', 'sub_concept', 'is_active')
    list_filter = ('is_active', 'sub_concept')
    search_fields = ('description',)


@admin.register(PaymentMethod)
class PaymentMethodAdmin(admin.ModelAdmin):
    list_display = ('description', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('description',)
