from django.conf import settings
from django.test.runner import DiscoverRunner


class LocalAppsDiscoverRunner(DiscoverRunner):
    def build_suite(self, test_labels=None, **kwargs):
        if not test_labels:
            test_labels = [
                app_path.split('.apps.')[0]
                for app_path in getattr(settings, 'LOCAL_APPS', [])
            ]
        return super().build_suite(test_labels=test_labels, **kwargs)
