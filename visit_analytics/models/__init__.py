from visit_analytics.models.page_view import PageView, ViewCountCache, PageViewArchive  # noqa: F401
