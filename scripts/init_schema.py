#!/usr/bin/env python3
"""
Create the finishline schema in the PostgreSQL database named by DATABASE_URL.

Also installs the trigger that publishes row changes on the
``finishline_changes`` channel used by ``datastore.subscribe``.
"""
import os
import sys

import psycopg2

from finishline.datastore_pg import CHANGE_CHANNEL
from finishline.scoring import HOUSES


def create_tables(conn):
    """Create tables and indexes (idempotent)."""
    houses = ", ".join(f"'{h}'" for h in HOUSES)
    with conn.cursor() as cur:
        cur.execute("""
            CREATE TABLE IF NOT EXISTS race_events (
                id SERIAL PRIMARY KEY,
                name VARCHAR(200) NOT NULL,
                date DATE NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'active', 'completed')),
                finish_seq INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS runners (
                id SERIAL PRIMARY KEY,
                name VARCHAR(200) NOT NULL,
                house VARCHAR(50) NOT NULL CHECK (house IN ({houses})),
                age_group VARCHAR(50) NOT NULL,
                date_of_birth DATE,
                gender VARCHAR(20),
                finish_time TIMESTAMPTZ,
                position INTEGER,
                running_time_seconds INTEGER,
                arrival_seq INTEGER,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                CHECK ((position IS NULL) = (running_time_seconds IS NULL)),
                CHECK (position IS NULL OR finish_time IS NOT NULL)
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS runner_races (
                id SERIAL PRIMARY KEY,
                runner_id INTEGER NOT NULL REFERENCES runners(id) ON DELETE CASCADE,
                race_id INTEGER NOT NULL REFERENCES race_events(id) ON DELETE CASCADE,
                UNIQUE (runner_id, race_id)
            )
        """)

        cur.execute(f"""
            CREATE TABLE IF NOT EXISTS house_points (
                id SERIAL PRIMARY KEY,
                house VARCHAR(50) NOT NULL CHECK (house IN ({houses})),
                points INTEGER NOT NULL,
                race_id INTEGER REFERENCES race_events(id) ON DELETE SET NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS admin_settings (
                id SERIAL PRIMARY KEY,
                key VARCHAR(200) UNIQUE NOT NULL,
                value TEXT,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS admin_logs (
                id SERIAL PRIMARY KEY,
                action VARCHAR(50) NOT NULL,
                user_id VARCHAR(200),
                timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
                details TEXT
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS platform_status (
                id SERIAL PRIMARY KEY,
                platform VARCHAR(100) UNIQUE NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'disabled')),
                message TEXT,
                updated_by VARCHAR(200),
                last_updated TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("ALTER TABLE runners ADD COLUMN IF NOT EXISTS arrival_seq INTEGER")

        cur.execute("CREATE INDEX IF NOT EXISTS idx_runner_races_race ON runner_races(race_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_house_points_house ON house_points(house)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_admin_logs_timestamp ON admin_logs(timestamp DESC)")

        conn.commit()
        print("Database schema created successfully")


def install_change_feed(conn):
    """Publish every row change as JSON on the change channel."""
    with conn.cursor() as cur:
        cur.execute(f"""
            CREATE OR REPLACE FUNCTION finishline_notify_change() RETURNS trigger AS $$
            DECLARE
                rec RECORD;
            BEGIN
                IF TG_OP = 'DELETE' THEN
                    rec := OLD;
                ELSE
                    rec := NEW;
                END IF;
                PERFORM pg_notify(
                    '{CHANGE_CHANNEL}',
                    json_build_object('table', TG_TABLE_NAME, 'type', TG_OP, 'record', row_to_json(rec))::text
                );
                RETURN rec;
            END;
            $$ LANGUAGE plpgsql
        """)
        for table in ("race_events", "runners", "house_points", "platform_status"):
            cur.execute(f"DROP TRIGGER IF EXISTS {table}_notify ON {table}")
            cur.execute(f"""
                CREATE TRIGGER {table}_notify
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW EXECUTE FUNCTION finishline_notify_change()
            """)
        conn.commit()
        print("Change feed triggers installed")


def seed_platform(conn, platform):
    with conn.cursor() as cur:
        cur.execute("""
            INSERT INTO platform_status (platform, status, message)
            VALUES (%s, 'active', 'System operational')
            ON CONFLICT (platform) DO NOTHING
        """, (platform,))
        conn.commit()


def main():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("ERROR: DATABASE_URL environment variable not set")
        return 1

    conn = psycopg2.connect(database_url)
    try:
        create_tables(conn)
        install_change_feed(conn)
        seed_platform(conn, os.environ.get("FINISHLINE_PLATFORM", "cross-country"))

        with conn.cursor() as cur:
            for table in ("race_events", "runners", "runner_races", "house_points", "admin_logs"):
                cur.execute(f"SELECT COUNT(*) FROM {table}")
                print(f"- {table}: {cur.fetchone()[0]} rows")
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
