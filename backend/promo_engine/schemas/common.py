from pydantic import BaseModel


class PaginationMeta(BaseModel):
    total_items: int
    total_pages: int
    page: int
    limit: int

    @classmethod
    def build(cls, *, total_items: int, page: int, limit: int) -> "PaginationMeta":
        total_pages = max(1, (int(total_items) + limit - 1) // limit) if limit else 1
        return cls(total_items=int(total_items), total_pages=total_pages, page=page, limit=limit)
