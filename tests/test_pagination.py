from __future__ import annotations

import pytest

from fakes import make_task
from tes_api.app.errors import InvalidArgumentError
from tes_api.app.pagination import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PageCursor,
    PageTokenCodec,
    clamp_page_size,
    paginate,
)
from tes_api.storage.memory import InMemoryTaskStorage


@pytest.fixture
def codec() -> PageTokenCodec:
    return PageTokenCodec("unit-test-secret")


@pytest.mark.parametrize(
    ("requested", "expected"),
    [
        (None, DEFAULT_PAGE_SIZE),
        (0, DEFAULT_PAGE_SIZE),
        (-5, DEFAULT_PAGE_SIZE),
        (10, 10),
        (MAX_PAGE_SIZE, MAX_PAGE_SIZE),
        (MAX_PAGE_SIZE + 1, MAX_PAGE_SIZE),
    ],
)
def test_clamp_page_size(requested: int | None, expected: int) -> None:
    assert clamp_page_size(requested) == expected


def test_paging_visits_every_task_once_in_creation_order(
    storage: InMemoryTaskStorage, codec: PageTokenCodec
) -> None:
    created = [storage.create_task(make_task(name=f"job-{index}")) for index in range(7)]

    seen: list[str] = []
    token = ""
    pages = 0
    while True:
        tasks, token = paginate(storage, codec, page_size=3, page_token=token)
        seen.extend(task.id for task in tasks)
        pages += 1
        if not token:
            break

    assert seen == created
    assert pages == 3


def test_last_full_page_has_no_next_token(
    storage: InMemoryTaskStorage, codec: PageTokenCodec
) -> None:
    for _ in range(4):
        storage.create_task(make_task())

    first, token = paginate(storage, codec, page_size=2)
    second, last_token = paginate(storage, codec, page_size=2, page_token=token)

    assert len(first) == 2 and token
    assert len(second) == 2
    assert last_token == ""


def test_tasks_created_after_first_page_appear_later(
    storage: InMemoryTaskStorage, codec: PageTokenCodec
) -> None:
    existing = [storage.create_task(make_task()) for _ in range(3)]
    first, token = paginate(storage, codec, page_size=2)
    late = storage.create_task(make_task())

    rest, _ = paginate(storage, codec, page_size=10, page_token=token)

    assert [task.id for task in first] + [task.id for task in rest] == [*existing, late]


def test_filters_are_applied_on_every_page(
    storage: InMemoryTaskStorage, codec: PageTokenCodec
) -> None:
    for index in range(4):
        storage.create_task(make_task(name=f"align-{index}", project="genomics"))
        storage.create_task(make_task(name=f"align-{index}", project="physics"))

    first, token = paginate(storage, codec, project="genomics", name_prefix="align", page_size=3)
    second, token = paginate(
        storage, codec, project="genomics", name_prefix="align", page_size=3, page_token=token
    )

    assert token == ""
    assert {task.project for task in [*first, *second]} == {"genomics"}
    assert len(first) + len(second) == 4


def test_empty_token_means_first_page(codec: PageTokenCodec) -> None:
    assert codec.decode("", project="", name_prefix="") is None


def test_token_roundtrip(codec: PageTokenCodec) -> None:
    token = codec.encode(PageCursor(seq=42), project="p", name_prefix="n")

    assert codec.decode(token, project="p", name_prefix="n") == PageCursor(seq=42)


def test_tampered_token_is_rejected(codec: PageTokenCodec) -> None:
    token = codec.encode(PageCursor(seq=42), project="", name_prefix="")
    body, _, signature = token.partition(".")
    forged = PageTokenCodec("other-secret").encode(PageCursor(seq=1), project="", name_prefix="")
    forged_body = forged.partition(".")[0]

    with pytest.raises(InvalidArgumentError, match="signature mismatch"):
        codec.decode(f"{forged_body}.{signature}", project="", name_prefix="")
    with pytest.raises(InvalidArgumentError, match="signature mismatch"):
        codec.decode(forged, project="", name_prefix="")
    assert body != forged_body


@pytest.mark.parametrize("token", ["garbage", "!!!.???", "a.b.c"])
def test_malformed_token_is_rejected(codec: PageTokenCodec, token: str) -> None:
    with pytest.raises(InvalidArgumentError):
        codec.decode(token, project="", name_prefix="")


def test_token_is_bound_to_its_filters(codec: PageTokenCodec) -> None:
    token = codec.encode(PageCursor(seq=3), project="genomics", name_prefix="align")

    with pytest.raises(InvalidArgumentError, match="different filters"):
        codec.decode(token, project="physics", name_prefix="align")


def test_paginate_rejects_token_from_other_filters(
    storage: InMemoryTaskStorage, codec: PageTokenCodec
) -> None:
    for _ in range(3):
        storage.create_task(make_task(project="genomics"))
    _, token = paginate(storage, codec, project="genomics", page_size=1)

    with pytest.raises(InvalidArgumentError):
        paginate(storage, codec, project="physics", page_size=1, page_token=token)
