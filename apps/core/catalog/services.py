from .models import Concept, StockItem


class ModelCatalog:
    """Catalog lookups backed by the catalog tables.

    Billing code only depends on the two lookup methods, so any object that
    provides them can be passed wherever a catalog is expected.
    """

    def lookup_inventory_item(self, name):
        name = (name or '').strip()
        if not name:
            return None
        return StockItem.objects.active().filter(name__iexact=name).first()

    def lookup_concept(self, description):
        description = (description or '').strip()
        if not description:
            return None
        return Concept.objects.active().filter(description__iexact=description).first()


def resolve_catalog(catalog=None):
    return catalog or ModelCatalog()
