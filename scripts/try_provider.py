"""Live check of the configured completion provider.

Usage (PowerShell):
  $env:COMPLETION_PROVIDER="gemini"
  $env:GOOGLE_API_KEY="<your key>"
  python scripts/try_provider.py "juan 3 leches, eli 2 pollos"

Runs one full analysis against a small in-memory catalog and prints the
phase responses and the extracted orders.
"""

from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    from magic_order.completion_client import build_completion_service
    from magic_order.config import AnalysisConfig, settings
    from magic_order.models import CatalogClient, CatalogProduct, CatalogSnapshot, CatalogVariant
    from magic_order.orchestrator import PhaseOrchestrator

    key = settings.google_api_key if settings.completion_provider == "gemini" else settings.groq_api_key
    if not key or key == "test-key-configure-in-env":
        print(f"Missing API key for provider {settings.completion_provider}.")
        return 2

    message = sys.argv[1] if len(sys.argv) > 1 else "juan 3 leches y 2 pañales talle G"
    catalog = CatalogSnapshot(
        clients=[CatalogClient(id="c1", name="Juan Perez"), CatalogClient(id="c2", name="Eli Gomez")],
        products=[
            CatalogProduct(id="p1", name="Leche", price=1.5),
            CatalogProduct(id="p2", name="Pañales", price=9.0, variants=[
                CatalogVariant(id="v1", name="M", price=10.0),
                CatalogVariant(id="v2", name="G", price=12.0),
            ]),
            CatalogProduct(id="p3", name="Pollo", price=5.0),
        ],
    )

    outcome = PhaseOrchestrator(build_completion_service(), AnalysisConfig.from_settings(), catalog).run(message)

    print(f"Provider: {settings.completion_provider} ({settings.analysis_mode})")
    print(f"Status: {outcome.status.value} in {outcome.elapsed_seconds:.1f}s, repairs={outcome.repair_attempts}")
    for label, text in (("Phase 1", outcome.phase1_response), ("Phase 2", outcome.phase2_response),
                        ("Phase 3", outcome.phase3_response)):
        if text:
            print(f"--- {label} ---\n{text}")
    if outcome.error:
        print(f"Error: {outcome.error.system_message}")
        return 1
    for result in outcome.results:
        print(result.model_dump_json(by_alias=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
