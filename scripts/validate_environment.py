#!/usr/bin/env python3
"""Validate local venue pricing environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.pricing_service import HourlyPricingRequest, PricingService
from venue_pricing.services.surge_calculator import calculate_surge_factor
from venue_pricing.utils.config import get_settings
from venue_pricing.utils.time_utils import floor_hour, utc_now

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="venue-pricing-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import PackageNotFoundError, version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "venue_pricing_validation.db",
        )
        repository = PricingRepository(validation_settings)

        # CHECK 3: Document store initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Document store initialization", True)
        except Exception as exc:
            ok, line = _print_result("Document store initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Demo seed
        sublocation_id = None
        try:
            repository.seed_demo_data()
            sublocations = repository.store.find("sublocations")
            if len(sublocations) != 1:
                raise RuntimeError(f"expected 1 sublocation, got {len(sublocations)}")
            sublocation_id = sublocations[0]["_id"]
            ok, line = _print_result(
                "Demo seed",
                True,
                f": {repository.count_rules()} ratesheets",
            )
        except Exception as exc:
            ok, line = _print_result("Demo seed", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Hourly pricing of a sample booking
        try:
            if sublocation_id is None:
                raise RuntimeError("no seeded sublocation to price")
            start = floor_hour(utc_now()) + timedelta(days=1)
            result = PricingService(repository=repository, settings=validation_settings).calculate_hourly(
                HourlyPricingRequest(
                    sublocation_id=sublocation_id,
                    start=start,
                    end=start + timedelta(hours=3),
                )
            )
            if len(result.segments) != 3:
                raise RuntimeError(f"expected 3 segments, got {len(result.segments)}")
            ok, line = _print_result(
                "Hourly pricing",
                True,
                f": total={result.total_price:.2f} over {result.total_hours:g}h",
            )
        except Exception as exc:
            ok, line = _print_result("Hourly pricing", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Surge calculator bounds
        try:
            calculation = calculate_surge_factor(20, 10, 1.0)
            if not 0.75 <= calculation.surge_factor <= 1.8:
                raise RuntimeError(f"surge factor {calculation.surge_factor} out of bounds")
            ok, line = _print_result(
                "Surge calculator",
                True,
                f": factor={calculation.surge_factor:.3f}",
            )
        except Exception as exc:
            ok, line = _print_result("Surge calculator", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Venue Pricing Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
