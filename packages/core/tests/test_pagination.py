"""Tests for page-size selection."""

import pytest

from gitspark_core.ado.pagination import PaginationStrategy

ENDPOINT = "git/pullrequests"


@pytest.mark.parametrize(
    "estimated_total, latency_ms, expected",
    [
        (500, 500, 100),  # base size
        (500, 1500, 500),  # slow network
        (500, 50, 50),  # fast network
        (20_000, 50, 1000),  # large total wins over latency
        (30, 500, 30),  # small total
        (3, 500, 10),  # floor for tiny totals
        (0, 500, 10),
        (-1, 500, 100),  # unknown total
        (-1, 1500, 500),
    ],
)
def test_calculate_optimal_page_size(estimated_total, latency_ms, expected):
    assert PaginationStrategy().calculate_optimal_page_size(ENDPOINT, estimated_total, latency_ms) == expected


def test_result_never_exceeds_configured_maximum():
    strategy = PaginationStrategy(max_page_size=200)
    assert strategy.calculate_optimal_page_size(ENDPOINT, 50_000, 2000) == 200


def test_maximum_is_capped_at_api_limit():
    assert PaginationStrategy(max_page_size=5000).max_page_size == 1000


def test_base_page_size_is_configurable():
    assert PaginationStrategy(base_page_size=250).calculate_optimal_page_size(ENDPOINT, 500, 500) == 250


@pytest.mark.parametrize("estimated_total, expected", [(5000, False), (5001, True), (-1, False)])
def test_should_partition(estimated_total, expected):
    assert PaginationStrategy.should_partition(estimated_total) is expected
