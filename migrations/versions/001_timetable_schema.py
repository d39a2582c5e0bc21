"""Initial schema for the timetable service.

Revision ID: 001_timetable_schema
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_timetable_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create timetable tables and lookup indexes."""

    # Users: school_admin manages timetables, teacher views own published entries
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT DEFAULT 'teacher',
                    school_id TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS schools (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT UNIQUE NOT NULL,
                    school_name TEXT NOT NULL,
                    current_term TEXT DEFAULT 'First Term',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS classes (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    classname TEXT NOT NULL,
                    UNIQUE(school_id, classname)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS teachers (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    firstname TEXT,
                    lastname TEXT,
                    UNIQUE(school_id, user_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    code TEXT,
                    teacher_id TEXT,
                    UNIQUE(school_id, subject_id)
                )''')

    # One row per placed subject; a class timetable is replaced as a whole on save
    op.execute('''CREATE TABLE IF NOT EXISTS timetables (
                    id SERIAL PRIMARY KEY,
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
    op.execute('CREATE INDEX IF NOT EXISTS idx_timetables_scope ON timetables(school_id, classname, term)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_timetables_teacher ON timetables(school_id, teacher_id, term)')

    op.execute('''CREATE TABLE IF NOT EXISTS announcements (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    teacher_id TEXT,
                    title TEXT NOT NULL,
                    content TEXT,
                    type TEXT DEFAULT 'timetable',
                    created_by TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')


def downgrade() -> None:
    """Drop all timetable tables."""
    op.execute('DROP TABLE IF EXISTS announcements')
    op.execute('DROP INDEX IF EXISTS idx_timetables_teacher')
    op.execute('DROP INDEX IF EXISTS idx_timetables_scope')
    op.execute('DROP TABLE IF EXISTS timetables')
    op.execute('DROP TABLE IF EXISTS subjects')
    op.execute('DROP TABLE IF EXISTS teachers')
    op.execute('DROP TABLE IF EXISTS classes')
    op.execute('DROP TABLE IF EXISTS schools')
    op.execute('DROP TABLE IF EXISTS users')
