"""
Shared fixtures: catalogs, a scripted completion service and JSON builders.
"""

import json
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from magic_order.completion_client import CompletionService
from magic_order.config import AnalysisConfig, Settings
from magic_order.models import (
    CatalogClient,
    CatalogProduct,
    CatalogSnapshot,
    CatalogVariant,
)


class FakeCompletionService(CompletionService):
    """
    Returns canned responses in order. An Exception instance in the script is
    raised instead of returned. `on_call(call_number, prompt)` runs after the
    response is picked, e.g. to cancel a run while its call is in flight.
    """

    name = "fake"

    def __init__(self, responses=None, on_call=None):
        self.responses = list(responses or [])
        self.on_call = on_call
        self.prompts = []
        self.options = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def _call(self, prompt, options):
        self.prompts.append(prompt)
        self.options.append(options)
        if not self.responses:
            raise AssertionError(f"Unexpected completion call #{len(self.prompts)}")
        response = self.responses.pop(0)
        if self.on_call is not None:
            self.on_call(len(self.prompts), prompt)
        if isinstance(response, BaseException):
            raise response
        return response


def client_group(client_name, client_id=None, confidence="high", items=None, unmatched=None):
    group = {
        "client": {"id": client_id, "name": client_name, "matchConfidence": confidence},
        "items": items if items is not None else [],
    }
    if unmatched is not None:
        group["unmatchedText"] = unmatched
    return group


def line_item(name, quantity, product_id=None, variant=None, status="confirmed", notes=None):
    item = {
        "product": {"id": product_id, "name": name},
        "quantity": quantity,
        "status": status,
        "alternatives": [],
    }
    if variant is not None:
        item["variant"] = variant
    if notes is not None:
        item["notes"] = notes
    return item


def to_json(groups) -> str:
    return json.dumps(groups, ensure_ascii=False)


@pytest.fixture
def simple_catalog():
    return CatalogSnapshot(
        clients=[CatalogClient(id="c1", name="Juan Perez")],
        products=[CatalogProduct(id="p1", name="Leche", variants=[])],
    )


@pytest.fixture
def catalog():
    return CatalogSnapshot(
        clients=[
            CatalogClient(id="c1", name="Juan Perez", phone="+54 11 5555 0001"),
            CatalogClient(id="c2", name="Eli Gomez"),
            CatalogClient(id="c3", name="Martin"),
        ],
        products=[
            CatalogProduct(id="p1", name="Leche", price=1.5),
            CatalogProduct(
                id="p2",
                name="Pañales",
                price=9.0,
                variants=[
                    CatalogVariant(id="v1", name="M", price=10.0),
                    CatalogVariant(id="v2", name="G", price=12.0),
                    CatalogVariant(id="v3", name="XG"),
                ],
            ),
            CatalogProduct(id="p3", name="Pollo", price=5.0),
        ],
    )


@pytest.fixture
def test_settings():
    return Settings(_env_file=None, completion_provider="gemini", analysis_mode="two_phase")


@pytest.fixture
def analysis_config(test_settings):
    return AnalysisConfig.from_settings(test_settings)


@pytest.fixture
def single_call_config():
    return AnalysisConfig.from_settings(
        Settings(_env_file=None, completion_provider="gemini", analysis_mode="single_call")
    )


@pytest.fixture
def juan_response():
    """Phase 2 answer for 'juan 3 leches' against simple_catalog"""
    return to_json([
        client_group("Juan Perez", "c1", "high", [line_item("Leche", 3, "p1")]),
    ])
