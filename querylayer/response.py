from typing import Any, Optional
from pydantic import BaseModel

class ResponseModel(BaseModel):
    code: int = 200
    message: str = "success"
    data: Optional[Any] = None

    @staticmethod
    def success(data: Any = None):
        return {"code": 200, "message": "success", "data": data}

    @staticmethod
    def fail(code: int = 400, message: str = "error", data: Any = None):
        return {"code": code, "message": message, "data": data}

    @staticmethod
    def paginated(page, serialize=None):
        """Envelope for a Page; serialize turns each item into JSON-able data."""
        items = [serialize(item) for item in page.items] if serialize else list(page.items)
        return ResponseModel.success(data={
            "items": items,
            "total": page.total,
            "per_page": page.per_page,
            "current_page": page.current_page,
            "last_page": page.last_page,
        })
