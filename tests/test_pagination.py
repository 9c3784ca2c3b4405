import math

import pytest

from repositories import CourseRepository, build_pagination, parse_fields, parse_sort, projection_for


@pytest.mark.parametrize(
    "page,limit,total",
    [(1, 20, 0), (1, 20, 45), (2, 20, 45), (3, 20, 45), (1, 10, 10), (2, 7, 100), (5, 1, 5)],
)
def test_pagination_arithmetic(page, limit, total):
    result = build_pagination(page, limit, total)
    assert result["totalPages"] == math.ceil(total / limit)
    assert result["hasNextPage"] == (page < result["totalPages"])
    assert result["hasPrevPage"] == (page > 1)
    assert result["currentPage"] == page
    assert result["totalCount"] == total
    assert result["nextPage"] == (page + 1 if result["hasNextPage"] else None)
    assert result["prevPage"] == (page - 1 if page > 1 else None)


def course(n):
    return {
        "title": f"Course {n}",
        "description": "Intro",
        "category": "tech",
        "instructor": "Tunde",
        "duration": 3,
        "createdBy": "creator",
    }


@pytest.fixture
def courses(database):
    repository = CourseRepository(database)
    repository.create_many(course(n) for n in range(45))
    return repository


def test_first_page_of_45(courses):
    page = courses.find_many({}, {"limit": 20})
    assert len(page["documents"]) == 20
    assert page["pagination"]["totalPages"] == 3
    assert page["pagination"]["hasNextPage"] is True
    assert page["pagination"]["hasPrevPage"] is False


def test_last_page_of_45(courses):
    page = courses.find_many({}, {"page": 3, "limit": 20})
    assert len(page["documents"]) == 5
    assert page["pagination"]["hasNextPage"] is False
    assert page["pagination"]["nextPage"] is None
    assert page["pagination"]["prevPage"] == 2


def test_pages_do_not_overlap(courses):
    seen = []
    for number in (1, 2, 3):
        seen += [d["id"] for d in courses.find_many({}, {"page": number, "limit": 20})["documents"]]
    assert len(seen) == len(set(seen)) == 45


def test_defaults_to_page_one_of_twenty(courses):
    page = courses.find_many()
    assert page["pagination"]["currentPage"] == 1
    assert page["pagination"]["limit"] == 20


def test_sort_and_select(courses):
    page = courses.find_many({}, {"sort": "title", "select": "title", "limit": 2})
    assert [d["title"] for d in page["documents"]] == ["Course 0", "Course 1"]
    assert set(page["documents"][0]) == {"id", "title"}


def test_page_past_the_end_is_empty(courses):
    page = courses.find_many({}, {"page": 9, "limit": 20})
    assert page["documents"] == []
    assert page["pagination"]["hasPrevPage"] is True


def test_parse_helpers():
    assert parse_sort("-createdAt,title") == [("createdAt", -1), ("title", 1)]
    assert parse_sort("") is None
    assert parse_fields("title description") == ["title", "description"]
    assert projection_for("-password,-bio") == {"password": 0, "bio": 0}
    assert projection_for("title,_id") == {"title": 1}
