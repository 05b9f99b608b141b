"""vulnsync — local vulnerability intelligence cache.

This package keeps a local, periodically-refreshed copy of the NVD
vulnerability feeds and answers "is this vendor/product/version affected?"
queries against it during dependency analysis.
"""

__version__ = "0.1.0"
