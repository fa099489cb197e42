# Upload limits per asset category.  maxSizeMB is the per-file ceiling;
# allowedTypes lists accepted content types, or ['*'] to accept anything.
# Categories not listed here fall back to DEFAULT_LIMITS.  The whole table
# can be overridden with the FILE_SIZE_LIMITS environment variable (same
# JSON shape).

import json

IMAGE_TYPES = ['image/jpeg', 'image/png', 'image/gif', 'image/webp']

CATEGORY_LIMITS = {
    # 'CATEGORY': {'maxSizeMB': N, 'allowedTypes': [...]},
    'product': {'maxSizeMB': 5, 'allowedTypes': IMAGE_TYPES},
    'member': {'maxSizeMB': 2, 'allowedTypes': IMAGE_TYPES},
    'order': {'maxSizeMB': 10, 'allowedTypes': IMAGE_TYPES + ['application/pdf']},
    'document': {'maxSizeMB': 20, 'allowedTypes': ['*']},
}

DEFAULT_LIMITS = {'maxSizeMB': 100, 'allowedTypes': ['*']}


def load_category_limits(override_json=None):
    """Return the category table, with entries from override_json replacing defaults."""
    limits = dict(CATEGORY_LIMITS)
    if override_json:
        limits.update(json.loads(override_json))
    return limits
