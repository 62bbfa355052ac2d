"""
CLI: run the full workflow.

  prescription (.txt) → interpret → standardize → catalog → validate (gate) → select → outputs

Outputs: parsed.json, validation.json, selection.json, audit.jsonl, review_queue.jsonl
"""
import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

from rxmatch.cache import LRUCache, MemoryCache, TieredCache
from rxmatch.config import get_settings
from rxmatch.errors import InterpretationError
from rxmatch.interpret import payload_json_example
from rxmatch.pipeline import build_pipeline
from rxmatch.schemas import AuditContext, ParsedPrescription, SelectionOptions
from rxmatch.validation import format_validation_outcome

DEMO_PARSE = ParsedPrescription(
    drug_name="Lisinopril",
    original_drug_name="lisinipril",
    strength="10mg",
    dosage_form="tablet",
    sig="Take 1 tablet by mouth once daily",
    quantity=90,
    quantity_unit="tablet",
    days_supply=90,
    confidence=0.93,
    corrections=["lisinipril -> lisinopril"],
)

DEMO_RXCUI = "314076"

DEMO_PRODUCTS = [
    {
        "product_ndc": "68180-513",
        "generic_name": "LISINOPRIL",
        "labeler_name": "Lupin Pharmaceuticals, Inc.",
        "dosage_form": "TABLET",
        "route": ["ORAL"],
        "active_ingredients": [{"name": "LISINOPRIL", "strength": "10 mg/1"}],
        "listing_expiration_date": "20991231",
        "packaging": [
            {"package_ndc": "68180-513-01", "description": "90 TABLET in 1 BOTTLE"},
            {"package_ndc": "68180-513-03", "description": "1000 TABLET in 1 BOTTLE"},
            {"package_ndc": "68180-513-09", "description": "10 TABLET in 1 BLISTER PACK", "sample": True},
        ],
    },
    {
        "product_ndc": "0172-3759",
        "generic_name": "LISINOPRIL",
        "labeler_name": "Teva Pharmaceuticals USA, Inc.",
        "brand_name": "Prinivil",
        "dosage_form": "TABLET",
        "route": ["ORAL"],
        "active_ingredients": [{"name": "LISINOPRIL", "strength": "10 mg/1"}],
        "packaging": [
            {"package_ndc": "0172-3759-60", "description": "30 TABLET in 1 BOTTLE"},
        ],
    },
]


class _CannedResponse:
    def __init__(self, data: dict[str, Any], status_code: int = 200):
        self._data = data
        self.status_code = status_code

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict[str, Any]:
        return self._data


class DemoSession:
    """Answers RxNav and openFDA requests with built-in data (no network)."""

    def get(self, url: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> _CannedResponse:
        if url.endswith("/approximateTerm.json"):
            return _CannedResponse({"approximateGroup": {"candidate": [
                {"rxcui": DEMO_RXCUI, "name": "lisinopril 10 MG Oral Tablet", "score": "100"},
            ]}})
        if url.endswith(f"/rxcui/{DEMO_RXCUI}/properties.json"):
            return _CannedResponse({"properties": {
                "rxcui": DEMO_RXCUI, "name": "lisinopril 10 MG Oral Tablet", "tty": "SCD",
            }})
        if "rxcui" in (params or {}).get("search", "") or "generic_name" in (params or {}).get("search", ""):
            return _CannedResponse({"results": DEMO_PRODUCTS})
        return _CannedResponse({}, status_code=404)


def _write_json(path: Path, model: Any) -> None:
    path.write_text(model.model_dump_json(indent=2), encoding="utf-8")


def run(
    input_path: str,
    out_base: str,
    demo: bool = False,
    options: SelectionOptions | None = None,
) -> int:
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Prescription file not found: {input_path}")
    text = path.read_text(encoding="utf-8")

    run_id = str(uuid.uuid4())
    out_dir = Path(out_base) / run_id
    out_dir.mkdir(parents=True, exist_ok=True)

    settings = get_settings()
    if demo:
        pipeline = build_pipeline(
            settings,
            out_dir,
            cache=TieredCache(MemoryCache(), l1=LRUCache(max_size=settings.l1_max_size, ttl=settings.l1_ttl)),
            oracle=lambda system, user: payload_json_example(DEMO_PARSE),
            session=DemoSession(),
            options=options,
            model_name="demo (no LLM)",
        )
    else:
        pipeline = build_pipeline(settings, out_dir, options=options)

    try:
        result = pipeline.process(text, AuditContext(run_id=run_id))
    except InterpretationError as e:
        print(f"ERROR: Interpretation failed: {e}. See {out_dir / 'audit.jsonl'}.")
        return 1

    _write_json(out_dir / "parsed.json", result.parsed)
    _write_json(out_dir / "validation.json", result.validation)
    if result.selection is not None:
        _write_json(out_dir / "selection.json", result.selection)
        (out_dir / "recommendations.json").write_text(
            json.dumps([r.model_dump(mode="json") for r in result.recommendations], indent=2),
            encoding="utf-8",
        )

    if demo:
        print("(Demo mode: no LLM or registry calls; used built-in parse and catalog)")
    print(f"Run ID: {run_id}")
    print(format_validation_outcome(result.validation))
    print(f"Status: {result.status}")
    if result.message:
        print(result.message)
    print(f"Output folder: {out_dir}")
    return 0


def main() -> None:
    p = argparse.ArgumentParser(description="Prescription → NDC packages: interpret → standardize → catalog → validate → select")
    p.add_argument("--input", required=True, help="Path to prescription .txt")
    p.add_argument("--out", default="outputs", help="Output folder")
    p.add_argument("--demo", action="store_true", help="Skip LLM and registries; use built-in data")
    p.add_argument("--max-packages", type=int, default=3, help="Max distinct package sizes per dispense")
    p.add_argument("--max-overfill", type=float, default=50.0, help="Max overfill percentage for combinations")
    p.add_argument("--no-prefer-fewer", action="store_true", help="Pick the best score even if it uses more packages")
    p.add_argument("--verbose", action="store_true", help="Debug logging")
    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    options = SelectionOptions(
        max_packages=args.max_packages,
        max_overfill_percentage=args.max_overfill,
        prefer_fewer_packages=not args.no_prefer_fewer,
    )
    sys.exit(run(args.input, args.out, demo=args.demo, options=options))


if __name__ == "__main__":
    main()
