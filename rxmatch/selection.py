"""
Selection step: required quantity + CandidatePackage[] → PackageSelection (deterministic).

1. Unit filter: keep the most common normalized unit among active packages.
2. Single-package search: exact size, else the smallest package that covers the quantity,
   else the largest package repeated.
3. Multi-package search: 2 and 3 distinct sizes (from the 15 smallest), each used 0..10 times,
   within the overfill limit.
4. Score = 0.6 overfill + 0.3 package count + 0.1 standard size; the single solution wins
   unless the best combination beats it by more than the preference margin.
"""
import itertools
import logging
import math
from collections import Counter
from typing import Iterator, Optional, Sequence

from rxmatch.errors import InvalidQuantityError, NoCompatiblePackagesError
from rxmatch.schemas import (
    CandidatePackage,
    CostEfficiency,
    PackageRecommendation,
    PackageSelection,
    SelectedPackage,
    SelectionOptions,
)

logger = logging.getLogger(__name__)

SCORING_WEIGHTS = {"overfill": 0.6, "package_count": 0.3, "size_preference": 0.1}
EFFICIENCY_THRESHOLDS = {"optimal": 95.0, "acceptable": 80.0}
STANDARD_SIZES = (30, 60, 90, 100, 120, 500, 1000)
MAX_GROUP_SIZE = 3

UNIT_SYNONYMS = {
    "tablets": "tablet", "tab": "tablet", "tabs": "tablet",
    "capsules": "capsule", "cap": "capsule", "caps": "capsule",
    "milliliter": "ml", "milliliters": "ml", "millilitre": "ml", "millilitres": "ml",
    "liter": "l", "liters": "l", "litre": "l", "litres": "l",
    "gram": "g", "grams": "g", "gm": "g",
    "units": "unit", "each": "unit",
}

# (package, count) pairs before they become SelectedPackage rows
Plan = list[tuple[CandidatePackage, int]]


def normalize_unit(unit: str | None) -> str:
    u = (unit or "").strip().lower()
    return UNIT_SYNONYMS.get(u, u)


def filter_compatible_packages(candidates: Sequence[CandidatePackage]) -> list[CandidatePackage]:
    """Active, positive-size packages sharing the most common unit (inactive ones only if nothing is active)."""
    usable = [p for p in candidates if p.package_quantity > 0 and p.package_unit]
    pool = [p for p in usable if p.is_active] or usable
    if not pool:
        return []
    counts = Counter(normalize_unit(p.package_unit) for p in pool)
    # most_common keeps first-seen order on ties
    unit = counts.most_common(1)[0][0]
    return [p for p in pool if normalize_unit(p.package_unit) == unit]


def calculate_efficiency(required: float, total_units: float) -> float:
    if total_units <= 0:
        return 0.0
    return required / total_units * 100


def calculate_overfill(required: float, total_units: float) -> tuple[float, float]:
    """(overfill units, overfill percentage of required)."""
    amount = total_units - required
    return amount, amount / required * 100


def classify_efficiency(efficiency: float) -> CostEfficiency:
    if efficiency >= EFFICIENCY_THRESHOLDS["optimal"]:
        return "optimal"
    if efficiency >= EFFICIENCY_THRESHOLDS["acceptable"]:
        return "acceptable"
    return "wasteful"


def size_preference_score(sizes: Sequence[float]) -> float:
    """Base 50, plus a 20-point share for each line that is a standard pharmacy size."""
    score = 50.0
    for size in sizes:
        if size in STANDARD_SIZES:
            score += 20 / len(sizes)
    return min(100.0, score)


def calculate_score(plan: Plan, overfill_percentage: float) -> float:
    overfill_score = max(0.0, 100 - overfill_percentage)
    total_packages = sum(count for _, count in plan)
    package_count_score = max(0.0, 100 - (total_packages - 1) * 20)
    size_score = size_preference_score([pkg.package_quantity for pkg, _ in plan])
    return (
        overfill_score * SCORING_WEIGHTS["overfill"]
        + package_count_score * SCORING_WEIGHTS["package_count"]
        + size_score * SCORING_WEIGHTS["size_preference"]
    )


def build_selection(plan: Plan, required: float) -> PackageSelection:
    selected = [
        SelectedPackage(package=pkg, quantity=count, units=pkg.package_quantity * count)
        for pkg, count in plan
    ]
    total = sum(s.units for s in selected)
    overfill, overfill_pct = calculate_overfill(required, total)
    efficiency = calculate_efficiency(required, total)
    return PackageSelection(
        selected_packages=selected,
        total_units=total,
        overfill=overfill,
        overfill_percentage=overfill_pct,
        efficiency=efficiency,
        score=calculate_score(plan, overfill_pct),
        cost_efficiency=classify_efficiency(efficiency),
        feasible=total >= required,
    )


def find_single_package_solution(required: float, sorted_packages: Sequence[CandidatePackage]) -> PackageSelection:
    """Exact size, else smallest package ≥ required, else the largest package repeated."""
    for pkg in sorted_packages:
        if pkg.package_quantity == required:
            return build_selection([(pkg, 1)], required)
    for pkg in sorted_packages:
        if pkg.package_quantity >= required:
            return build_selection([(pkg, 1)], required)
    largest = sorted_packages[-1]
    return build_selection([(largest, math.ceil(required / largest.package_quantity))], required)


def generate_combinations(
    num_types: int,
    max_per_package: int,
    sizes: Sequence[float] | None = None,
    max_total: float | None = None,
) -> Iterator[tuple[int, ...]]:
    """
    Every count vector in 0..max_per_package for num_types package types, except all zeros,
    in lexicographic order. With sizes and max_total, a branch stops as soon as its running
    total passes max_total (sizes are positive, so higher counts only add).
    """
    bounded = sizes is not None and max_total is not None

    def extend(prefix: tuple[int, ...], total: float) -> Iterator[tuple[int, ...]]:
        i = len(prefix)
        if i == num_types:
            if any(prefix):
                yield prefix
            return
        for n in range(max_per_package + 1):
            running = total + sizes[i] * n if bounded else total
            if bounded and running > max_total:
                break
            yield from extend(prefix + (n,), running)

    yield from extend((), 0.0)


def _distinct_sizes(sorted_packages: Sequence[CandidatePackage], limit: int) -> list[CandidatePackage]:
    """First package of each size, smallest sizes first, at most `limit` of them."""
    seen: set[float] = set()
    out = []
    for pkg in sorted_packages:
        if pkg.package_quantity in seen:
            continue
        seen.add(pkg.package_quantity)
        out.append(pkg)
        if len(out) == limit:
            break
    return out


def find_multi_package_solution(
    required: float,
    sorted_packages: Sequence[CandidatePackage],
    options: SelectionOptions,
) -> Optional[PackageSelection]:
    """Best-scoring combination of 2 (and 3) distinct sizes, or None when nothing qualifies."""
    sizes = _distinct_sizes(sorted_packages, options.max_package_sizes)
    max_group = min(options.max_packages, MAX_GROUP_SIZE, len(sizes))

    if options.allow_overfill:
        max_total = required * (1 + options.max_overfill_percentage / 100)
    else:
        max_total = required

    best_plan: Optional[Plan] = None
    best_score = -math.inf
    for group_size in range(2, max_group + 1):
        for group in itertools.combinations(sizes, group_size):
            group_sizes = [pkg.package_quantity for pkg in group]
            for counts in generate_combinations(group_size, options.max_per_package, group_sizes, max_total):
                total = sum(size * n for size, n in zip(group_sizes, counts))
                if total < required:
                    continue
                plan = [(pkg, n) for pkg, n in zip(group, counts) if n > 0]
                _, overfill_pct = calculate_overfill(required, total)
                score = calculate_score(plan, overfill_pct)
                if score > best_score:
                    best_plan, best_score = plan, score

    if best_plan is None:
        return None
    return build_selection(best_plan, required)


def choose_best_solution(
    single: PackageSelection,
    multi: Optional[PackageSelection],
    options: SelectionOptions,
) -> PackageSelection:
    """With prefer_fewer_packages the combination must win by more than the margin; ties go to single."""
    if multi is None:
        return single
    if options.prefer_fewer_packages and single.score >= multi.score - options.preference_margin:
        return single
    return single if single.score >= multi.score else multi


def add_reasoning(selection: PackageSelection) -> PackageSelection:
    lines = selection.selected_packages
    if len(lines) == 1 and lines[0].quantity == 1:
        shape = "Single package solution"
    elif len(lines) == 1:
        shape = f"Using {lines[0].quantity} packages of the same size"
    else:
        shape = f"Multi-package combination ({len(lines)} different sizes)"

    if selection.overfill == 0:
        waste = "exact match with no waste"
    elif selection.overfill_percentage < 5:
        waste = "minimal waste"
    elif selection.overfill_percentage < 15:
        waste = "acceptable waste level"
    else:
        waste = f"{selection.overfill_percentage:.1f}% overfill"

    efficiency = f"{selection.efficiency:.1f}% efficient ({selection.cost_efficiency})"
    return selection.model_copy(update={"reasoning": " - ".join([shape, waste, efficiency])})


def select_optimal_packages(
    required_quantity: float,
    candidates: Sequence[CandidatePackage],
    options: SelectionOptions | None = None,
) -> PackageSelection:
    """Pick the package plan that covers required_quantity with the best score."""
    options = options or SelectionOptions()
    if required_quantity is None or required_quantity <= 0:
        raise InvalidQuantityError(f"Quantity must be positive, got {required_quantity}")
    if not candidates:
        raise NoCompatiblePackagesError("No packages available for selection")

    compatible = filter_compatible_packages(candidates)
    if not compatible:
        raise NoCompatiblePackagesError("No compatible packages found for the requested quantity")
    sorted_packages = sorted(compatible, key=lambda p: p.package_quantity)

    single = find_single_package_solution(required_quantity, sorted_packages)
    multi = None
    if options.max_packages > 1:
        multi = find_multi_package_solution(required_quantity, sorted_packages, options)

    best = add_reasoning(choose_best_solution(single, multi, options))
    logger.info("Selected packages for %g units: %s", required_quantity, best.reasoning)
    return best


def generate_recommendations(selection: PackageSelection, required_quantity: float) -> list[PackageRecommendation]:
    """One UI row per selected package line."""
    return [
        PackageRecommendation(
            ndc=s.package.ndc,
            package_description=s.package.package_description,
            quantity_needed=required_quantity,
            packages_required=s.quantity,
            total_units=s.units,
            overage=selection.overfill,
            cost_efficiency=selection.cost_efficiency,
            labeler_name=s.package.labeler_name,
            brand_name=s.package.brand_name,
        )
        for s in selection.selected_packages
    ]
