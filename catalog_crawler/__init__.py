"""
Sitemap-driven product crawler that keeps a retail catalog in sync.
"""

__version__ = "0.1.0"
