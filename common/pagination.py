from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for admin and route list endpoints (`?page_size=`, capped)."""

    page_size_query_param = "page_size"
    max_page_size = 500
