from typing import Iterator

from uploader.backend import ObjectBackend
from uploader.errors import PermanentBackendError


class ListingEnumerator:
    """Lazily walks the bucket one page per backend call.

    Every `iter_keys()` call starts a fresh pagination cycle. The next page is
    only requested once the caller has consumed the previous one.
    """

    def __init__(self, backend: ObjectBackend, page_size: int = 1000, max_pages: int = 10000) -> None:
        self.backend = backend
        self.page_size = page_size
        self.max_pages = max_pages

    def iter_keys(self, prefix: str = "") -> Iterator[str]:
        token: str | None = None
        seen_tokens: set[str] = set()
        pages = 0
        while True:
            if pages >= self.max_pages:
                raise PermanentBackendError(f"listing did not finish within {self.max_pages} pages")
            page = self.backend.list_objects(prefix=prefix, continuation_token=token, page_size=self.page_size)
            pages += 1
            yield from page.entries
            token = page.continuation_token
            if not token:
                return
            if token in seen_tokens:
                raise PermanentBackendError(f"listing returned continuation token {token!r} twice")
            seen_tokens.add(token)
