from __future__ import annotations

import pytest

from fakes import JAN_1, JAN_6, JAN_7, JAN_10, FakeCollection, FakeNeoClient, feed, neo


@pytest.fixture
def example_client() -> FakeNeoClient:
    """The worked example: Eros and Apollo in the first week, Icarus after."""
    return FakeNeoClient(
        {
            (JAN_1, JAN_6): feed(
                {
                    "2024-01-02": [neo("Eros", 433)],
                    "2024-01-05": [neo("Apollo", 1862)],
                }
            ),
            (JAN_7, JAN_10): feed({"2024-01-09": [neo("Icarus", 1566)]}),
        }
    )


@pytest.fixture
def favourites_collection() -> FakeCollection:
    return FakeCollection()
