"""Punch classification.

Devices rarely report a trustworthy in/out state, so the role of every punch
in a day is inferred from how many punches there are and the gaps between
them. The result is a best guess: whenever a punch looks like it is missing a
counterpart the guess is still made and the punch is flagged with a note.
"""
import logging
from typing import Iterable, List, Optional

from models.rules import ReconcileRules
from models.schema import ClassifiedPunch, PunchRole, RawPunch
from utils.timeutils import in_window, minute_of_day, minutes_between

CI = PunchRole.CLOCK_IN
CO = PunchRole.CLOCK_OUT
BI = PunchRole.BREAK_IN
BO = PunchRole.BREAK_OUT


def _classified(punch: RawPunch, role: PunchRole, note: Optional[str] = None) -> ClassifiedPunch:
    return ClassifiedPunch(
        employee_external_id=punch.employee_external_id,
        timestamp=punch.timestamp,
        device_reported_state=punch.device_reported_state,
        role=role,
        missing_punch=note is not None,
        missing_punch_note=note,
    )


def _gaps(punches: List[RawPunch]) -> List[int]:
    return [minutes_between(a.timestamp, b.timestamp) for a, b in zip(punches, punches[1:])]


def _classify_single(punch: RawPunch, rules: ReconcileRules) -> List[ClassifiedPunch]:
    if minute_of_day(punch.timestamp) < minute_of_day(rules.single_punch_cutoff):
        return [_classified(punch, CI, "Single punch detected. Assumed as Clock In based on time.")]
    return [_classified(punch, CO, "Single punch detected. Assumed as Clock Out based on time.")]


def _classify_three(punches: List[RawPunch], rules: ReconcileRules) -> List[ClassifiedPunch]:
    first, middle, last = punches
    gap1, gap2 = _gaps(punches)
    tolerance = rules.edge_tolerance_minutes

    if minute_of_day(first.timestamp) > minute_of_day(rules.workday_start) + tolerance:
        return [
            _classified(first, BI, "Possible missing Clock In at start of day."),
            _classified(middle, BO),
            _classified(last, CO),
        ]
    if minute_of_day(last.timestamp) < minute_of_day(rules.workday_end) - tolerance:
        return [
            _classified(first, CI),
            _classified(middle, BI),
            _classified(last, BO, "Possible missing Clock Out at end of day."),
        ]
    threshold = rules.missing_break_gap_minutes
    if gap1 > gap2 and gap1 > threshold:
        return [
            _classified(first, CI),
            _classified(middle, BO, "Possible missing Break In before this punch."),
            _classified(last, CO),
        ]
    if gap2 > gap1 and gap2 > threshold:
        return [
            _classified(first, CI),
            _classified(middle, BI, "Possible missing Break Out after this punch."),
            _classified(last, CO),
        ]
    return [
        _classified(first, CI),
        _classified(middle, BI),
        _classified(last, CO, "Odd number of punches, pattern unclear."),
    ]


def _is_break_resumption(leave: RawPunch, back: RawPunch, rules: ReconcileRules) -> bool:
    return (
        in_window(leave.timestamp, rules.lunch_window_start, rules.lunch_window_end)
        and in_window(back.timestamp, rules.lunch_window_start, rules.lunch_window_end)
        and minutes_between(leave.timestamp, back.timestamp) <= rules.max_break_minutes
    )


def _classify_four(punches: List[RawPunch], rules: ReconcileRules) -> List[ClassifiedPunch]:
    gap = minutes_between(punches[1].timestamp, punches[2].timestamp)
    if gap > rules.double_shift_gap_minutes and not _is_break_resumption(punches[1], punches[2], rules):
        logging.debug(f"Double shift pattern for {punches[0].employee_external_id}: {gap} min gap")
        roles = (CI, CO, CI, CO)
    else:
        roles = (CI, BI, BO, CO)
    return [_classified(p, role) for p, role in zip(punches, roles)]


def _alternating_role(index: int, likely_break: bool) -> PunchRole:
    # odd positions leave work, even positions come back
    if index % 2 == 1:
        return BI if likely_break else CO
    return BO if likely_break else CI


def _classify_many(punches: List[RawPunch], rules: ReconcileRules) -> List[ClassifiedPunch]:
    count = len(punches)
    gaps = _gaps(punches)
    odd = count % 2 == 1
    result = [_classified(punches[0], CI)]

    for i in range(1, count - 1):
        prev_gap = gaps[i - 1]
        next_gap = gaps[i]
        punch = punches[i]

        if odd and prev_gap > rules.large_gap_minutes and i > 1:
            if result[-1].role in (CI, BO):
                result.append(_classified(punch, CO, "Long gap before this punch; a Break In may be missing."))
            else:
                result.append(_classified(punch, CI, "Long gap before this punch; a Break Out may be missing."))
            continue
        if odd and next_gap > rules.large_gap_minutes and i < count - 2:
            if i % 2 == 1:
                result.append(_classified(punch, BI, "Possible missing Break Out after this punch."))
            else:
                result.append(_classified(punch, BO, "Possible missing Break In after this punch."))
            continue

        likely_break = prev_gap < rules.short_gap_minutes or next_gap < rules.short_gap_minutes
        result.append(_classified(punch, _alternating_role(i, likely_break)))

    result.append(_classified(punches[-1], CO))

    if odd and not any(p.missing_punch for p in result):
        result[-2] = result[-2].model_copy(update={
            "missing_punch": True,
            "missing_punch_note": "Odd number of punches, pattern unclear. Check manually.",
        })
    return result


def classify_day(punches: Iterable[RawPunch], rules: ReconcileRules) -> List[ClassifiedPunch]:
    """Assign a role to every punch of one employee on one day.

    Returns the punches sorted by timestamp, one ClassifiedPunch per input.
    """
    ordered = sorted(punches, key=lambda p: p.timestamp)
    count = len(ordered)

    if count == 0:
        return []
    if count == 1:
        return _classify_single(ordered[0], rules)
    if count == 2:
        return [_classified(ordered[0], CI), _classified(ordered[1], CO)]
    if count == 3:
        return _classify_three(ordered, rules)
    if count == 4:
        return _classify_four(ordered, rules)
    return _classify_many(ordered, rules)
