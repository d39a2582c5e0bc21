"""
Timetable generation helpers.

Pure functions shared by every timetable screen: slot parsing, the greedy
slot assignment, conflict checks and CSV export. Nothing here touches the
database or the Flask request.
"""

import csv
import re
from datetime import datetime, timedelta
from io import StringIO

DAYS_OF_WEEK = [
    ('monday', 'Monday'),
    ('tuesday', 'Tuesday'),
    ('wednesday', 'Wednesday'),
    ('thursday', 'Thursday'),
    ('friday', 'Friday'),
]
DAY_VALUES = [value for value, _label in DAYS_OF_WEEK]
DAY_LABELS = dict(DAYS_OF_WEEK)

CSV_HEADER = ['Day', 'Subject', 'Teacher', 'Start Time', 'End Time']

_TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})(?::\d{2})?$')


def normalize_time(value):
    """Return a zero-padded 'HH:MM' string or raise ValueError."""
    raw = (value or '').strip()
    match = _TIME_RE.match(raw)
    if not match:
        raise ValueError(f'Invalid time "{raw}". Use HH:MM (24-hour).')
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f'Invalid time "{raw}". Use HH:MM (24-hour).')
    return f'{hours:02d}:{minutes:02d}'


def day_label(value):
    return DAY_LABELS.get((value or '').strip().lower(), (value or '').strip().title())


def build_default_slots(start='08:00', period_minutes=40, count=8):
    """Consecutive periods of equal length starting at `start`."""
    current = datetime.strptime(normalize_time(start), '%H:%M')
    slots = []
    for _ in range(count):
        end = current + timedelta(minutes=period_minutes)
        slots.append({'start': current.strftime('%H:%M'), 'end': end.strftime('%H:%M')})
        current = end
    return slots


def parse_time_slots(starts, ends):
    """
    Build the ordered slot list from parallel start/end form values.

    Rows where both values are blank are skipped. Overlapping slots are
    allowed; each slot must still end after it starts.
    """
    if len(starts) != len(ends):
        raise ValueError('Every time slot needs both a start and an end time.')
    slots = []
    for idx, (raw_start, raw_end) in enumerate(zip(starts, ends), start=1):
        if not (raw_start or '').strip() and not (raw_end or '').strip():
            continue
        start = normalize_time(raw_start)
        end = normalize_time(raw_end)
        if end <= start:
            raise ValueError(f'Time slot {idx} must end after it starts ({start} - {end}).')
        slots.append({'start': start, 'end': end})
    return slots


def resolve_teacher_map(subject_ids, chosen, subjects, default_teacher_id=''):
    """
    Pick a teacher for every subject.

    Order of preference: the teacher chosen on the form, the teacher stored on
    the subject, then `default_teacher_id`.
    """
    teacher_of = {}
    for subject_id in subject_ids:
        teacher_id = (chosen.get(subject_id) or '').strip()
        if not teacher_id:
            teacher_id = ((subjects.get(subject_id) or {}).get('teacher_id') or '').strip()
        teacher_of[subject_id] = teacher_id or default_teacher_id
    return teacher_of


def generate_timetable(subject_ids, teacher_of, slots, days=None, default_teacher_id=''):
    """
    Place every subject once in the week, greedily and in input order.

    Each (day, slot) pair is scored as (1 if the teacher is already booked at
    that day and start time, else 0) plus the number of subjects already on
    that day. The first strictly lowest score wins, scanning days in order and
    slots in list order. A lower score does not guarantee a free teacher, so
    run find_teacher_conflicts() on the result.
    """
    if not slots:
        raise ValueError('At least one time slot is required to generate a timetable.')
    days = list(days or DAY_VALUES)

    booked = {}
    day_load = {day: 0 for day in days}
    entries = []
    for subject_id in subject_ids:
        teacher_id = teacher_of.get(subject_id) or default_teacher_id
        teacher_booked = booked.setdefault(teacher_id, set())

        best = None
        best_score = None
        for day in days:
            for slot in slots:
                score = (1 if f"{day}-{slot['start']}" in teacher_booked else 0) + day_load[day]
                if best_score is None or score < best_score:
                    best_score = score
                    best = (day, slot)

        day, slot = best
        entries.append({
            'subject_id': subject_id,
            'teacher_id': teacher_id,
            'day_of_week': day,
            'start_time': slot['start'],
            'end_time': slot['end'],
        })
        teacher_booked.add(f"{day}-{slot['start']}")
        day_load[day] += 1
    return entries


def find_teacher_conflicts(entries, teacher_names=None, subject_names=None):
    """Messages for every entry that double-books its teacher."""
    teacher_names = teacher_names or {}
    subject_names = subject_names or {}
    seen = {}
    conflicts = []
    for entry in entries:
        teacher_id = entry.get('teacher_id') or ''
        key = f"{entry.get('day_of_week')}-{entry.get('start_time')}"
        teacher_seen = seen.setdefault(teacher_id, set())
        if key in teacher_seen:
            conflicts.append(
                f"{teacher_names.get(teacher_id) or teacher_id or 'Unassigned teacher'} is double-booked: "
                f"{subject_names.get(entry.get('subject_id')) or entry.get('subject_id')} on "
                f"{day_label(entry.get('day_of_week'))} at {entry.get('start_time')}."
            )
        else:
            teacher_seen.add(key)
    return conflicts


def find_room_conflicts(entries):
    """Messages for entries sharing a room at the same day and start time."""
    seen = set()
    conflicts = []
    for entry in entries:
        room = ' '.join((entry.get('room') or '').split())
        if not room:
            continue
        key = (room.lower(), entry.get('day_of_week'), entry.get('start_time'))
        if key in seen:
            conflicts.append(
                f"Room {room} is already occupied on {day_label(entry.get('day_of_week'))} "
                f"at {entry.get('start_time')}."
            )
        else:
            seen.add(key)
    return conflicts


def sort_entries(entries):
    """Weekday order, then start time."""
    order = {day: idx for idx, day in enumerate(DAY_VALUES)}
    return sorted(
        entries,
        key=lambda e: (order.get((e.get('day_of_week') or '').lower(), len(order)), e.get('start_time') or ''),
    )


def build_week_grid(entries):
    """
    Arrange entries for the printable grid.

    Returns (rows, days) where each row is {'start', 'end', 'cells'} and
    cells maps a day value to the entries placed there.
    """
    slot_keys = sorted({(e.get('start_time') or '', e.get('end_time') or '') for e in entries})
    rows = []
    for start, end in slot_keys:
        cells = {day: [] for day in DAY_VALUES}
        for entry in entries:
            if entry.get('start_time') == start and entry.get('end_time') == end:
                cells.setdefault(entry.get('day_of_week'), []).append(entry)
        rows.append({'start': start, 'end': end, 'cells': cells})
    return rows, DAYS_OF_WEEK


def timetable_to_csv(entries, subject_names=None, teacher_names=None):
    """CSV text with one row per entry, in the order given."""
    subject_names = subject_names or {}
    teacher_names = teacher_names or {}
    output = StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow([
            day_label(entry.get('day_of_week')),
            subject_names.get(entry.get('subject_id'), ''),
            teacher_names.get(entry.get('teacher_id'), ''),
            entry.get('start_time', ''),
            entry.get('end_time', ''),
        ])
    return output.getvalue()
