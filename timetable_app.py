"""
School Timetable Service

Flask web application for building class timetables across schools:
greedy slot generation, teacher conflict review, manual corrections,
publishing, teacher notifications and CSV/print exports.

Version: 1.0.0
"""

from flask import Flask, render_template, request, redirect, url_for, session, flash, Response
from flask_migrate import Migrate
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError
from wtforms import StringField, IntegerField, SelectField, validators
import re
from datetime import datetime, timedelta
from werkzeug.security import generate_password_hash, check_password_hash

import os
import secrets
from contextlib import contextmanager

import logging
from dotenv import load_dotenv

from timetable_engine import (
    DAYS_OF_WEEK,
    build_default_slots,
    build_week_grid,
    day_label,
    find_room_conflicts,
    find_teacher_conflicts,
    generate_timetable,
    normalize_time,
    parse_time_slots,
    resolve_teacher_map,
    sort_entries,
    timetable_to_csv,
)

load_dotenv()

app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

csrf = CSRFProtect(app)
migrate = Migrate(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
DEFAULT_TERM = os.environ.get('DEFAULT_TERM', 'First Term').strip() or 'First Term'
PK_COLUMN_SQL = 'SERIAL PRIMARY KEY'
ROLES = {'school_admin', 'teacher'}
DRAFT_TTL_MINUTES = 30
MAX_DRAFTS = 100

def _adapt_query(query):
    return query.replace('?', '%s')

def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)

def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)

@contextmanager
def db_connection(commit=False):
    """Context manager for DB connections; commits only if the block finished."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()

# Set up logging
logging.basicConfig(filename='app.log', level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Short-lived in-memory store for generated timetables awaiting review.
TIMETABLE_DRAFTS = {}

def _cleanup_timetable_drafts():
    cutoff = datetime.now() - timedelta(minutes=DRAFT_TTL_MINUTES)
    stale_tokens = [tok for tok, item in TIMETABLE_DRAFTS.items() if item.get('created_at') and item['created_at'] < cutoff]
    for tok in stale_tokens:
        TIMETABLE_DRAFTS.pop(tok, None)
    # Keep memory bounded in long-running process.
    if len(TIMETABLE_DRAFTS) > MAX_DRAFTS:
        for tok, _item in sorted(TIMETABLE_DRAFTS.items(), key=lambda kv: kv[1].get('created_at', datetime.min))[:len(TIMETABLE_DRAFTS) - MAX_DRAFTS]:
            TIMETABLE_DRAFTS.pop(tok, None)

def _store_timetable_draft(school_id, classname, term, entries):
    _cleanup_timetable_drafts()
    token = secrets.token_urlsafe(18)
    TIMETABLE_DRAFTS[token] = {
        'school_id': school_id,
        'classname': classname,
        'term': term,
        'entries': entries,
        'created_at': datetime.now(),
    }
    return token

def get_timetable_draft(token, school_id):
    """Return the draft for this school, or None if it expired or belongs elsewhere."""
    _cleanup_timetable_drafts()
    item = TIMETABLE_DRAFTS.get((token or '').strip())
    if not item or item.get('school_id') != school_id:
        return None
    return item

def init_db():
    """Create timetable tables if they don't exist."""
    conn = get_db()
    c = conn.cursor()

    def safe_exec_ignore(sql):
        """
        Execute DDL that may fail if column/index already exists, without
        poisoning the whole PostgreSQL transaction.
        """
        db_execute(c, 'SAVEPOINT ddl_ignore')
        try:
            db_execute(c, sql)
        except Exception:
            db_execute(c, 'ROLLBACK TO SAVEPOINT ddl_ignore')
        finally:
            db_execute(c, 'RELEASE SAVEPOINT ddl_ignore')

    # Users: school_admin manages timetables, teacher views own published entries
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS users (
                        id {PK_COLUMN_SQL},
                        username TEXT UNIQUE NOT NULL,
                        password_hash TEXT NOT NULL,
                        role TEXT DEFAULT 'teacher',
                        school_id TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS schools (
                        id {PK_COLUMN_SQL},
                        school_id TEXT UNIQUE NOT NULL,
                        school_name TEXT NOT NULL,
                        current_term TEXT DEFAULT 'First Term',
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS classes (
                        id {PK_COLUMN_SQL},
                        school_id TEXT NOT NULL,
                        classname TEXT NOT NULL,
                        UNIQUE(school_id, classname)
                    )''')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS teachers (
                        id {PK_COLUMN_SQL},
                        school_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        firstname TEXT,
                        lastname TEXT,
                        UNIQUE(school_id, user_id)
                    )''')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS subjects (
                        id {PK_COLUMN_SQL},
                        school_id TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        code TEXT,
                        teacher_id TEXT,
                        UNIQUE(school_id, subject_id)
                    )''')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS timetables (
                        id {PK_COLUMN_SQL},
                        school_id TEXT NOT NULL,
                        classname TEXT NOT NULL,
                        term TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        teacher_id TEXT,
                        day_of_week TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        room TEXT,
                        is_published INTEGER DEFAULT 0,
                        created_by TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    safe_exec_ignore('ALTER TABLE timetables ADD COLUMN room TEXT')
    safe_exec_ignore('CREATE INDEX IF NOT EXISTS idx_timetables_scope ON timetables(school_id, classname, term)')
    safe_exec_ignore('CREATE INDEX IF NOT EXISTS idx_timetables_teacher ON timetables(school_id, teacher_id, term)')
    db_execute(c, f'''CREATE TABLE IF NOT EXISTS announcements (
                        id {PK_COLUMN_SQL},
                        school_id TEXT NOT NULL,
                        teacher_id TEXT,
                        title TEXT NOT NULL,
                        content TEXT,
                        type TEXT DEFAULT 'timetable',
                        created_by TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    conn.commit()
    conn.close()

def create_bootstrap_admin():
    """Create the first school and its admin from BOOTSTRAP_* env vars, if set."""
    username = os.environ.get('BOOTSTRAP_ADMIN_USERNAME', '').strip().lower()
    password = os.environ.get('BOOTSTRAP_ADMIN_PASSWORD', '').strip()
    school_id = os.environ.get('BOOTSTRAP_SCHOOL_ID', '').strip()
    school_name = os.environ.get('BOOTSTRAP_SCHOOL_NAME', '').strip() or school_id
    if not (username and password and school_id):
        return
    if len(password) < 12:
        raise RuntimeError("BOOTSTRAP_ADMIN_PASSWORD is too short. Use at least 12 characters.")
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, '''INSERT INTO schools (school_id, school_name, current_term)
                       VALUES (?, ?, ?)
                       ON CONFLICT(school_id) DO NOTHING''', (school_id, school_name, DEFAULT_TERM))
        db_execute(c, 'SELECT role FROM users WHERE LOWER(username) = LOWER(?)', (username,))
        row = c.fetchone()
        if row:
            # Never reset passwords or escalate roles on startup.
            if (row[0] or '') != 'school_admin':
                logging.warning("BOOTSTRAP_ADMIN_USERNAME '%s' exists with role '%s'; skipping.", username, row[0])
            return
        db_execute(c, '''INSERT INTO users (username, password_hash, role, school_id)
                       VALUES (?, ?, ?, ?)''', (username, generate_password_hash(password), 'school_admin', school_id))
        logging.info("Bootstrap school admin created: %s (%s)", username, school_id)

# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")
RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_BOOTSTRAP:
    create_bootstrap_admin()

# ==================== LOOKUPS ====================

def get_user(username):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT username, password_hash, role, school_id FROM users WHERE LOWER(username) = LOWER(?)', (username,))
        row = c.fetchone()
    if not row:
        return None
    return {'username': row[0], 'password_hash': row[1], 'role': row[2], 'school_id': row[3]}

def get_school(school_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT school_id, school_name, current_term FROM schools WHERE school_id = ?', (school_id,))
        row = c.fetchone()
    if not row:
        return None
    return {'school_id': row[0], 'school_name': row[1], 'current_term': row[2]}

def get_current_term(school):
    return ((school or {}).get('current_term') or '').strip() or DEFAULT_TERM

def get_classes(school_id):
    """Class names for a school, alphabetical."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT classname FROM classes WHERE school_id = ? ORDER BY classname', (school_id,))
        return [row[0] for row in c.fetchall()]

def get_subjects(school_id):
    """Subjects keyed by subject_id, ordered by name."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, '''SELECT subject_id, name, code, teacher_id FROM subjects
                       WHERE school_id = ? ORDER BY name''', (school_id,))
        subjects = {}
        for row in c.fetchall():
            subjects[row[0]] = {'name': row[1], 'code': row[2] or '', 'teacher_id': row[3] or ''}
        return subjects

def get_teachers(school_id):
    """Get all teachers for a school."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, '''SELECT user_id, firstname, lastname FROM teachers
                       WHERE school_id = ? ORDER BY firstname, lastname, user_id''', (school_id,))
        teachers = {}
        for row in c.fetchall():
            teachers[row[0]] = {'firstname': row[1] or '', 'lastname': row[2] or ''}
        return teachers

def teacher_display_names(teachers):
    return {
        tid: f"{t.get('firstname', '')} {t.get('lastname', '')}".strip() or tid
        for tid, t in teachers.items()
    }

def subject_display_names(subjects):
    return {sid: s.get('name') or sid for sid, s in subjects.items()}

def _dedupe_keep_order(items):
    seen = set()
    out = []
    for item in items:
        key = (item or '').strip()
        if key and key not in seen:
            seen.add(key)
            out.append(key)
    return out

def _safe_filename_token(value):
    return re.sub(r'[^A-Za-z0-9]+', '_', (value or '').strip()).strip('_') or 'class'

# ==================== TIMETABLE PERSISTENCE ====================

def save_class_timetable(school_id, classname, term, entries, created_by):
    """Replace the class timetable for a term in a single transaction."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'DELETE FROM timetables WHERE school_id = ? AND classname = ? AND term = ?',
            (school_id, classname, term),
        )
        for entry in entries:
            db_execute(
                c,
                '''INSERT INTO timetables
                   (school_id, classname, term, subject_id, teacher_id, day_of_week, start_time, end_time, room, is_published, created_by)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (
                    school_id,
                    classname,
                    term,
                    entry['subject_id'],
                    entry.get('teacher_id') or None,
                    entry['day_of_week'],
                    entry['start_time'],
                    entry['end_time'],
                    (entry.get('room') or '').strip() or None,
                    0,
                    created_by,
                ),
            )
    logging.info("Timetable saved: school=%s class=%s term=%s entries=%d", school_id, classname, term, len(entries))

def load_class_timetable(school_id, classname, term):
    """Saved entries for a class, in weekday then start-time order."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT subject_id, teacher_id, day_of_week, start_time, end_time, room, is_published
               FROM timetables
               WHERE school_id = ? AND classname = ? AND term = ?''',
            (school_id, classname, term),
        )
        rows = c.fetchall()
    entries = []
    for row in rows:
        subject_id, teacher_id, day, start, end, room, is_published = row
        entries.append({
            'subject_id': subject_id,
            'teacher_id': teacher_id or '',
            'day_of_week': day,
            'start_time': start,
            'end_time': end,
            'room': room or '',
            'is_published': bool(is_published),
        })
    return sort_entries(entries)

def list_school_timetables(school_id, term):
    """One summary row per class that has a saved timetable for the term."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT classname, COUNT(*), MAX(is_published), MAX(created_at)
               FROM timetables
               WHERE school_id = ? AND term = ?
               GROUP BY classname
               ORDER BY classname''',
            (school_id, term),
        )
        rows = c.fetchall()
    return [
        {
            'classname': classname,
            'entry_count': int(count or 0),
            'is_published': bool(published),
            'created_at': created_at,
        }
        for classname, count, published, created_at in rows
    ]

def set_timetable_published(school_id, classname, term, is_published):
    """Flip the published flag for a class timetable. Returns affected row count."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE timetables SET is_published = ?
               WHERE school_id = ? AND classname = ? AND term = ?''',
            (1 if is_published else 0, school_id, classname, term),
        )
        updated = int(c.rowcount or 0)
    logging.info("Timetable %s: school=%s class=%s term=%s rows=%d",
                 'published' if is_published else 'unpublished', school_id, classname, term, updated)
    return updated

def notify_timetable_teachers(school_id, classname, term, created_by):
    """Post one announcement per teacher on the saved class timetable."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT DISTINCT teacher_id FROM timetables
               WHERE school_id = ? AND classname = ? AND term = ?
                 AND teacher_id IS NOT NULL AND is_published = 1''',
            (school_id, classname, term),
        )
        teacher_ids = _dedupe_keep_order([row[0] for row in c.fetchall()])
        for teacher_id in teacher_ids:
            db_execute(
                c,
                '''INSERT INTO announcements (school_id, teacher_id, title, content, type, created_by)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (
                    school_id,
                    teacher_id,
                    'New Timetable Available',
                    f'A timetable for {classname} ({term}) has been published. Please check your dashboard.',
                    'timetable',
                    created_by,
                ),
            )
    return len(teacher_ids)

def load_teacher_timetable(school_id, teacher_id, term):
    """Published entries taught by one teacher, across all classes."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT classname, subject_id, day_of_week, start_time, end_time, room
               FROM timetables
               WHERE school_id = ? AND teacher_id = ? AND term = ? AND is_published = 1''',
            (school_id, teacher_id, term),
        )
        rows = c.fetchall()
    entries = [
        {
            'classname': classname,
            'subject_id': subject_id,
            'teacher_id': teacher_id,
            'day_of_week': day,
            'start_time': start,
            'end_time': end,
            'room': room or '',
        }
        for classname, subject_id, day, start, end, room in rows
    ]
    return sort_entries(entries)

def draft_conflicts(entries, teacher_names, subject_names):
    return find_teacher_conflicts(entries, teacher_names, subject_names) + find_room_conflicts(entries)

def csv_response(content, filename):
    return Response(
        content,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )

# ==================== FORMS ====================

TIME_PATTERN = r'^\d{1,2}:\d{2}$'

class EntryAddForm(FlaskForm):
    subject_id = SelectField('Subject', choices=[])
    day_of_week = SelectField('Day', choices=DAYS_OF_WEEK)
    start_time = StringField('Start', [validators.DataRequired(), validators.Regexp(TIME_PATTERN, message='Start time must be HH:MM.')])
    end_time = StringField('End', [validators.DataRequired(), validators.Regexp(TIME_PATTERN, message='End time must be HH:MM.')])
    teacher_id = SelectField('Teacher', choices=[])
    room = StringField('Room', [validators.Optional(), validators.Length(max=40)])

class EntryEditForm(EntryAddForm):
    index = IntegerField('Entry', [validators.InputRequired(), validators.NumberRange(min=0)])

class EntryDeleteForm(FlaskForm):
    index = IntegerField('Entry', [validators.InputRequired(), validators.NumberRange(min=0)])

def _entry_form(form_class, teacher_names, subject_names):
    form = form_class()
    form.subject_id.choices = list(subject_names.items())
    form.teacher_id.choices = list(teacher_names.items())
    return form

def _first_form_error(form):
    errors = [msg for field_errors in form.errors.values() for msg in field_errors]
    return errors[0] if errors else 'Invalid entry.'

def _entry_from_form(form):
    """Timetable entry built from a validated add/edit form. Raises ValueError on bad times."""
    start = normalize_time(form.start_time.data)
    end = normalize_time(form.end_time.data)
    if end <= start:
        raise ValueError(f'Entry must end after it starts ({start} - {end}).')
    return {
        'subject_id': form.subject_id.data,
        'teacher_id': form.teacher_id.data,
        'day_of_week': form.day_of_week.data,
        'start_time': start,
        'end_time': end,
        'room': ' '.join((form.room.data or '').split()),
    }

# ==================== ROUTES ====================

@app.route('/')
def home():
    return render_template('shared/login.html')

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if 'user_id' in session:
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('home'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))

@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        username = request.form.get('username', '').strip().lower()
        password = request.form.get('password', '')
        if not username or not password:
            flash('Please enter username and password.', 'error')
            return render_template('shared/login.html')

        user = get_user(username)
        if not user or not check_password_hash(user['password_hash'], password):
            logging.warning("Failed login for %s", username)
            flash('Invalid username or password.', 'error')
            return render_template('shared/login.html')
        if user.get('role') not in ROLES or not user.get('school_id'):
            flash('Invalid account configuration. Contact your school administrator.', 'error')
            return render_template('shared/login.html')

        session.clear()
        session['user_id'] = user['username']
        session['role'] = user['role']
        session['school_id'] = user['school_id']
        if user['role'] == 'school_admin':
            return redirect(url_for('school_admin_timetable'))
        return redirect(url_for('teacher_timetable'))

    return render_template('shared/login.html')

@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('home'))

@app.route('/school-admin/timetable')
def school_admin_timetable():
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    school = get_school(school_id)
    term = get_current_term(school)
    teachers = get_teachers(school_id)
    return render_template(
        'school/timetable_setup.html',
        school=school,
        term=term,
        classes=get_classes(school_id),
        subjects=get_subjects(school_id),
        teachers=teachers,
        teacher_names=teacher_display_names(teachers),
        default_slots=build_default_slots(),
        saved_timetables=list_school_timetables(school_id, term),
    )

@app.route('/school-admin/timetable/generate', methods=['POST'])
def school_admin_generate_timetable():
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    classname = ' '.join((request.form.get('classname') or '').split())
    term = ' '.join((request.form.get('term') or '').split()) or get_current_term(get_school(school_id))
    subject_ids = _dedupe_keep_order(request.form.getlist('subject_ids'))

    if not classname:
        flash('Please select a class.', 'error')
        return redirect(url_for('school_admin_timetable'))
    if classname not in get_classes(school_id):
        flash(f'Class {classname} is not registered in this school.', 'error')
        return redirect(url_for('school_admin_timetable'))
    if not subject_ids:
        flash('Please select at least one subject.', 'error')
        return redirect(url_for('school_admin_timetable'))

    subjects = get_subjects(school_id)
    unknown = [sid for sid in subject_ids if sid not in subjects]
    if unknown:
        flash(f'Unknown subject(s): {", ".join(unknown)}.', 'error')
        return redirect(url_for('school_admin_timetable'))
    teachers = get_teachers(school_id)
    if not teachers:
        flash('Add at least one teacher before generating a timetable.', 'error')
        return redirect(url_for('school_admin_timetable'))

    try:
        slots = parse_time_slots(request.form.getlist('slot_start'), request.form.getlist('slot_end'))
        chosen = {sid: (request.form.get(f'teacher_{sid}') or '').strip() for sid in subject_ids}
        invalid = [tid for tid in chosen.values() if tid and tid not in teachers]
        if invalid:
            raise ValueError('Selected teacher is not registered in this school.')
        # A subject's stored teacher that left the school counts as unassigned.
        assignable = {
            sid: dict(info, teacher_id=info.get('teacher_id') if info.get('teacher_id') in teachers else '')
            for sid, info in subjects.items()
        }
        teacher_of = resolve_teacher_map(subject_ids, chosen, assignable, default_teacher_id=next(iter(teachers)))
        entries = generate_timetable(subject_ids, teacher_of, slots)
    except ValueError as exc:
        flash(str(exc), 'error')
        return redirect(url_for('school_admin_timetable'))

    token = _store_timetable_draft(school_id, classname, term, entries)
    conflicts = find_teacher_conflicts(entries, teacher_display_names(teachers), subject_display_names(subjects))
    logging.info("Timetable generated: school=%s class=%s term=%s entries=%d conflicts=%d",
                 school_id, classname, term, len(entries), len(conflicts))
    if conflicts:
        flash(f'Timetable generated with {len(conflicts)} conflict(s). Review before saving.', 'error')
    else:
        flash('Timetable generated successfully. Review and save it.', 'success')
    return redirect(url_for('school_admin_timetable_draft', token=token))

@app.route('/school-admin/timetable/draft/<token>')
def school_admin_timetable_draft(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))

    teachers = get_teachers(school_id)
    teacher_names = teacher_display_names(teachers)
    subject_names = subject_display_names(get_subjects(school_id))
    return render_template(
        'school/timetable_draft.html',
        token=token,
        draft=draft,
        entries=draft['entries'],
        conflicts=draft_conflicts(draft['entries'], teacher_names, subject_names),
        teacher_names=teacher_names,
        subject_names=subject_names,
        day_label=day_label,
        form=_entry_form(EntryEditForm, teacher_names, subject_names),
        add_form=_entry_form(EntryAddForm, teacher_names, subject_names),
    )

@app.route('/school-admin/timetable/draft/<token>/edit', methods=['POST'])
def school_admin_edit_timetable_entry(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))

    form = _entry_form(
        EntryEditForm,
        teacher_display_names(get_teachers(school_id)),
        subject_display_names(get_subjects(school_id)),
    )
    if not form.validate_on_submit():
        flash(_first_form_error(form), 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    idx = form.index.data
    if idx >= len(draft['entries']):
        flash('Timetable entry not found.', 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))
    try:
        entry = _entry_from_form(form)
    except ValueError as exc:
        flash(str(exc), 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    draft['entries'][idx] = dict(draft['entries'][idx], **entry)
    flash('Timetable entry updated.', 'success')
    return redirect(url_for('school_admin_timetable_draft', token=token))

@app.route('/school-admin/timetable/draft/<token>/add', methods=['POST'])
def school_admin_add_timetable_entry(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))

    form = _entry_form(
        EntryAddForm,
        teacher_display_names(get_teachers(school_id)),
        subject_display_names(get_subjects(school_id)),
    )
    if not form.validate_on_submit():
        flash(_first_form_error(form), 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))
    try:
        entry = _entry_from_form(form)
    except ValueError as exc:
        flash(str(exc), 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    draft['entries'].append(entry)
    flash('Timetable entry added.', 'success')
    return redirect(url_for('school_admin_timetable_draft', token=token))

@app.route('/school-admin/timetable/draft/<token>/delete', methods=['POST'])
def school_admin_delete_timetable_entry(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))

    form = EntryDeleteForm()
    if not form.validate_on_submit():
        flash(_first_form_error(form), 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))
    idx = form.index.data
    if idx >= len(draft['entries']):
        flash('Timetable entry not found.', 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    draft['entries'].pop(idx)
    flash('Timetable entry removed.', 'success')
    return redirect(url_for('school_admin_timetable_draft', token=token))

@app.route('/school-admin/timetable/draft/<token>/export')
def school_admin_export_timetable_draft(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))
    content = timetable_to_csv(
        draft['entries'],
        subject_display_names(get_subjects(school_id)),
        teacher_display_names(get_teachers(school_id)),
    )
    return csv_response(content, f"timetable-{_safe_filename_token(draft['classname'])}.csv")

@app.route('/school-admin/timetable/draft/<token>/save', methods=['POST'])
def school_admin_save_timetable(token):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    draft = get_timetable_draft(token, school_id)
    if not draft:
        flash('Timetable draft expired or not found. Generate it again.', 'error')
        return redirect(url_for('school_admin_timetable'))
    if not draft['entries']:
        flash('No timetable entries to save.', 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    conflicts = draft_conflicts(
        draft['entries'],
        teacher_display_names(get_teachers(school_id)),
        subject_display_names(get_subjects(school_id)),
    )
    if conflicts:
        flash(f'Please resolve all conflicts before saving ({len(conflicts)} found).', 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    try:
        save_class_timetable(school_id, draft['classname'], draft['term'], draft['entries'], session.get('user_id'))
    except Exception:
        logging.exception("Failed to save timetable for %s (%s)", draft['classname'], school_id)
        flash('Failed to save timetable. Please try again.', 'error')
        return redirect(url_for('school_admin_timetable_draft', token=token))

    TIMETABLE_DRAFTS.pop(token, None)
    flash(f"Timetable saved for {draft['classname']}.", 'success')
    return redirect(url_for('school_admin_class_timetable', classname=draft['classname'], term=draft['term']))

def _requested_term(school_id):
    return ' '.join((request.values.get('term') or '').split()) or get_current_term(get_school(school_id))

@app.route('/school-admin/timetable/class/<classname>')
def school_admin_class_timetable(classname):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    term = _requested_term(school_id)
    entries = load_class_timetable(school_id, classname, term)
    return render_template(
        'school/timetable_class.html',
        classname=classname,
        term=term,
        entries=entries,
        is_published=any(e.get('is_published') for e in entries),
        teacher_names=teacher_display_names(get_teachers(school_id)),
        subject_names=subject_display_names(get_subjects(school_id)),
        day_label=day_label,
    )

@app.route('/school-admin/timetable/class/<classname>/edit', methods=['POST'])
def school_admin_reopen_class_timetable(classname):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    term = _requested_term(school_id)
    entries = load_class_timetable(school_id, classname, term)
    if not entries:
        flash(f'No saved timetable for {classname} ({term}).', 'error')
        return redirect(url_for('school_admin_timetable'))

    # Saving the draft again replaces the class rows and clears the published flag.
    token = _store_timetable_draft(
        school_id,
        classname,
        term,
        [{key: value for key, value in entry.items() if key != 'is_published'} for entry in entries],
    )
    flash(f'Editing saved timetable for {classname}. Save it again to apply your changes.', 'success')
    return redirect(url_for('school_admin_timetable_draft', token=token))

@app.route('/school-admin/timetable/class/<classname>/export')
def school_admin_export_class_timetable(classname):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    term = _requested_term(school_id)
    entries = load_class_timetable(school_id, classname, term)
    if not entries:
        flash(f'No saved timetable for {classname} ({term}).', 'error')
        return redirect(url_for('school_admin_timetable'))
    content = timetable_to_csv(
        entries,
        subject_display_names(get_subjects(school_id)),
        teacher_display_names(get_teachers(school_id)),
    )
    return csv_response(content, f'timetable-{_safe_filename_token(classname)}.csv')

@app.route('/school-admin/timetable/class/<classname>/print')
def school_admin_print_class_timetable(classname):
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    term = _requested_term(school_id)
    entries = load_class_timetable(school_id, classname, term)
    rows, days = build_week_grid(entries)
    return render_template(
        'school/timetable_print.html',
        school=get_school(school_id),
        classname=classname,
        term=term,
        rows=rows,
        days=days,
        teacher_names=teacher_display_names(get_teachers(school_id)),
        subject_names=subject_display_names(get_subjects(school_id)),
    )

@app.route('/school-admin/timetable/publish', methods=['POST'])
def school_admin_publish_timetable():
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    classname = ' '.join((request.form.get('classname') or '').split())
    term = _requested_term(school_id)
    publish = (request.form.get('action') or 'publish').strip().lower() != 'unpublish'
    if not classname:
        flash('Class name is required.', 'error')
        return redirect(url_for('school_admin_timetable'))
    try:
        updated = set_timetable_published(school_id, classname, term, publish)
    except Exception:
        logging.exception("Failed to update publish state for %s (%s)", classname, school_id)
        flash('Failed to update timetable. Please try again.', 'error')
        return redirect(url_for('school_admin_timetable'))
    if not updated:
        flash(f'No saved timetable for {classname} ({term}).', 'error')
    else:
        flash(f"Timetable {'published' if publish else 'unpublished'} for {classname}.", 'success')
    return redirect(url_for('school_admin_class_timetable', classname=classname, term=term))

@app.route('/school-admin/timetable/notify-teachers', methods=['POST'])
def school_admin_notify_timetable_teachers():
    if session.get('role') != 'school_admin':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    classname = ' '.join((request.form.get('classname') or '').split())
    term = _requested_term(school_id)
    if not classname:
        flash('Class name is required.', 'error')
        return redirect(url_for('school_admin_timetable'))
    entries = load_class_timetable(school_id, classname, term)
    if not entries:
        flash(f'No saved timetable for {classname} ({term}).', 'error')
        return redirect(url_for('school_admin_timetable'))
    if not any(e.get('is_published') for e in entries):
        flash(f'Publish the {classname} timetable before sending it to teachers.', 'error')
        return redirect(url_for('school_admin_class_timetable', classname=classname, term=term))
    try:
        count = notify_timetable_teachers(school_id, classname, term, session.get('user_id'))
    except Exception:
        logging.exception("Failed to notify teachers for %s (%s)", classname, school_id)
        flash('Failed to send timetable to teachers.', 'error')
        return redirect(url_for('school_admin_class_timetable', classname=classname, term=term))
    if count:
        flash(f'Timetable sent to {count} teacher(s).', 'success')
    else:
        flash(f'No teachers found on the {classname} timetable.', 'error')
    return redirect(url_for('school_admin_class_timetable', classname=classname, term=term))

@app.route('/teacher/timetable')
def teacher_timetable():
    if session.get('role') != 'teacher':
        return redirect(url_for('login'))

    school_id = session.get('school_id')
    term = _requested_term(school_id)
    entries = load_teacher_timetable(school_id, session.get('user_id'), term)
    return render_template(
        'teacher/teacher_timetable.html',
        term=term,
        entries=entries,
        subject_names=subject_display_names(get_subjects(school_id)),
        day_label=day_label,
    )

# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
