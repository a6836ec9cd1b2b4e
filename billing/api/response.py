from typing import Any, Optional

from rest_framework.response import Response

from ..types import Page


class APIResponse:
    """Standardized API response format: {success, message, data, meta?}."""

    @staticmethod
    def success(
        data: Any = None,
        message: str = "Success",
        status_code: int = 200,
        meta: Optional[dict] = None,
    ) -> Response:
        response_data = {
            "success": True,
            "message": message,
            "data": data,
        }
        if meta:
            response_data["meta"] = meta
        return Response(response_data, status=status_code)

    @staticmethod
    def created(data: Any, message: str = "Created") -> Response:
        return APIResponse.success(data, message, status_code=201)

    @staticmethod
    def paginated(page: Page, data: Any, message: str = "Success") -> Response:
        """Return a page of results with pagination metadata."""
        return APIResponse.success(
            data,
            message,
            meta={
                "pagination": {
                    "page": page.page,
                    "page_size": page.page_size,
                    "total": page.total,
                    "total_pages": page.total_pages,
                }
            },
        )
