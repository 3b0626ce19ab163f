import pytest

from uploader.backend import ListingPage
from uploader.errors import PermanentBackendError
from uploader.listing import ListingEnumerator


class _PagedBackend:
    def __init__(self, pages: dict) -> None:
        self.pages = pages
        self.tokens: list[str | None] = []

    def list_objects(self, prefix: str = "", continuation_token: str | None = None, page_size: int = 1000) -> ListingPage:
        self.tokens.append(continuation_token)
        return self.pages[continuation_token]


def _three_pages() -> _PagedBackend:
    return _PagedBackend(
        {
            None: ListingPage(entries=["a", "b"], continuation_token="t1"),
            "t1": ListingPage(entries=["c"], continuation_token="t2"),
            "t2": ListingPage(entries=["d", "e"], continuation_token=None),
        }
    )


def test_listing_fetches_pages_only_when_needed() -> None:
    backend = _three_pages()
    keys = ListingEnumerator(backend).iter_keys()

    assert backend.tokens == []
    assert next(keys) == "a"
    assert next(keys) == "b"
    assert backend.tokens == [None]
    assert next(keys) == "c"
    assert backend.tokens == [None, "t1"]
    assert list(keys) == ["d", "e"]
    assert backend.tokens == [None, "t1", "t2"]


def test_listing_restarts_on_each_call() -> None:
    backend = _three_pages()
    enumerator = ListingEnumerator(backend)

    assert list(enumerator.iter_keys()) == ["a", "b", "c", "d", "e"]
    assert list(enumerator.iter_keys()) == ["a", "b", "c", "d", "e"]
    assert backend.tokens == [None, "t1", "t2", None, "t1", "t2"]


def test_listing_gives_up_after_max_pages() -> None:
    class _EndlessBackend:
        def __init__(self) -> None:
            self.calls = 0

        def list_objects(self, prefix="", continuation_token=None, page_size=1000) -> ListingPage:
            self.calls += 1
            return ListingPage(entries=[f"k{self.calls}"], continuation_token=f"t{self.calls}")

    backend = _EndlessBackend()

    with pytest.raises(PermanentBackendError):
        list(ListingEnumerator(backend, max_pages=3).iter_keys())
    assert backend.calls == 3


def test_listing_detects_repeated_token() -> None:
    backend = _PagedBackend(
        {
            None: ListingPage(entries=["a"], continuation_token="t1"),
            "t1": ListingPage(entries=["b"], continuation_token="t1"),
        }
    )

    with pytest.raises(PermanentBackendError):
        list(ListingEnumerator(backend).iter_keys())


def test_empty_bucket_lists_nothing() -> None:
    backend = _PagedBackend({None: ListingPage(entries=[], continuation_token=None)})
    assert list(ListingEnumerator(backend).iter_keys()) == []
