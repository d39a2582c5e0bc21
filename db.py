from dotenv import load_dotenv
import os
import psycopg2
from werkzeug.security import generate_password_hash

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL not found. Set it in .env")

DEMO_SCHOOL_ID = os.getenv("DEMO_SCHOOL_ID", "DEMO")
DEMO_CLASSES = ["JSS1", "JSS2", "SS1"]
DEMO_TEACHERS = [
    ("t.okafor", "Grace", "Okafor"),
    ("t.bello", "Ahmed", "Bello"),
    ("t.adeyemi", "Tunde", "Adeyemi"),
]
DEMO_SUBJECTS = [
    ("MTH", "Mathematics", "MTH101", "t.okafor"),
    ("ENG", "English Language", "ENG101", "t.bello"),
    ("BSC", "Basic Science", "BSC101", "t.adeyemi"),
    ("SST", "Social Studies", "SST101", "t.bello"),
    ("CIV", "Civic Education", "CIV101", ""),
]

def db_execute(cursor, query, params=None):
    """
    Executes a SQL query using the provided cursor.
    Rolls back if there is an error.
    """
    try:
        cursor.execute(query, params)
    except Exception as e:
        cursor.connection.rollback()
        print("SQL ERROR:", e)
        raise

def seed_demo_school():
    """
    Inserts a demo school with classes, teachers and subjects.
    Tables must already exist (run migrate.py or start the app once).
    """
    teacher_password = os.getenv("DEMO_TEACHER_PASSWORD", "")
    if len(teacher_password) < 8:
        raise RuntimeError("DEMO_TEACHER_PASSWORD is required (at least 8 characters).")
    password_hash = generate_password_hash(teacher_password)

    with psycopg2.connect(DATABASE_URL) as conn:
        with conn.cursor() as cursor:
            db_execute(cursor, '''
                INSERT INTO schools (school_id, school_name, current_term)
                VALUES (%s, %s, %s)
                ON CONFLICT (school_id) DO NOTHING
            ''', (DEMO_SCHOOL_ID, "Demo Secondary School", "First Term"))
            for classname in DEMO_CLASSES:
                db_execute(cursor, '''
                    INSERT INTO classes (school_id, classname) VALUES (%s, %s)
                    ON CONFLICT (school_id, classname) DO NOTHING
                ''', (DEMO_SCHOOL_ID, classname))
            for user_id, firstname, lastname in DEMO_TEACHERS:
                db_execute(cursor, '''
                    INSERT INTO teachers (school_id, user_id, firstname, lastname) VALUES (%s, %s, %s, %s)
                    ON CONFLICT (school_id, user_id) DO NOTHING
                ''', (DEMO_SCHOOL_ID, user_id, firstname, lastname))
                db_execute(cursor, '''
                    INSERT INTO users (username, password_hash, role, school_id) VALUES (%s, %s, 'teacher', %s)
                    ON CONFLICT (username) DO NOTHING
                ''', (user_id, password_hash, DEMO_SCHOOL_ID))
            for subject_id, name, code, teacher_id in DEMO_SUBJECTS:
                db_execute(cursor, '''
                    INSERT INTO subjects (school_id, subject_id, name, code, teacher_id) VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (school_id, subject_id) DO NOTHING
                ''', (DEMO_SCHOOL_ID, subject_id, name, code, teacher_id or None))
            conn.commit()
            print("✅ Demo school seeded successfully.")

def show_timetables():
    """Print saved timetable sizes per class"""
    with psycopg2.connect(DATABASE_URL) as conn:
        with conn.cursor() as cursor:
            cursor.execute(
                "SELECT classname, term, COUNT(*) FROM timetables WHERE school_id = %s GROUP BY classname, term ORDER BY classname;",
                (DEMO_SCHOOL_ID,),
            )
            for row in cursor.fetchall():
                print(row)

if __name__ == "__main__":
    seed_demo_school()
    show_timetables()
