#!/usr/bin/env python3
"""
Setup Supabase tables for the Zoho claim sync backend.
Applies the zoho_tokens / activity_logs tables and the students constraints,
then checks each table is reachable with the service key.
"""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv
from supabase import create_client, Client

ROOT_DIR = Path(__file__).parent / 'backend'
load_dotenv(ROOT_DIR / '.env')

supabase_url = os.environ.get('SUPABASE_URL')
supabase_key = os.environ.get('SUPABASE_SERVICE_KEY')

SQL_COMMANDS = [
    # Zoho OAuth token pair, one row at most
    """
    CREATE TABLE IF NOT EXISTS zoho_tokens (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        refresh_token TEXT NOT NULL,
        access_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    ALTER TABLE zoho_tokens ENABLE ROW LEVEL SECURITY;
    DROP POLICY IF EXISTS "Service role only for zoho_tokens" ON zoho_tokens;
    CREATE POLICY "Service role only for zoho_tokens"
        ON zoho_tokens FOR ALL TO service_role
        USING (true) WITH CHECK (true);
    """,

    # Activity logs
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_activity_logs_entity ON activity_logs(entity_type, entity_id);
    CREATE INDEX IF NOT EXISTS idx_activity_logs_created_at ON activity_logs(created_at DESC);
    """,

    # Students: who the student is assigned to, and the five status values
    """
    ALTER TABLE students ADD COLUMN IF NOT EXISTS assigned_sales_id UUID REFERENCES profiles(id);
    ALTER TABLE students DROP CONSTRAINT IF EXISTS students_status_check;
    ALTER TABLE students ADD CONSTRAINT students_status_check
        CHECK (status IN ('active', 'enrolled', 'pending', 'claimed', 'cancelled'));
    """,
]

TABLES = ['zoho_tokens', 'activity_logs', 'students']


def create_tables(supabase: Client) -> bool:
    print("Applying commission backend schema...")
    for i, sql in enumerate(SQL_COMMANDS, 1):
        try:
            print(f"   Executing SQL command {i}/{len(SQL_COMMANDS)}...")
            supabase.rpc('exec_sql', {'sql': sql}).execute()
            print(f"   Command {i} executed successfully")
        except Exception as e:
            print(f"   Error executing command {i}: {str(e)}")
            return False
    return True


def verify_tables(supabase: Client) -> bool:
    print("\nVerifying tables...")
    for table in TABLES:
        try:
            supabase.table(table).select('id').limit(1).execute()
            print(f"   Table '{table}' is accessible")
        except Exception as e:
            print(f"   Table '{table}' error: {str(e)}")
            return False
    return True


if __name__ == "__main__":
    print("PJ Commission Database Setup")
    print("=" * 50)

    if not supabase_url or not supabase_key:
        print("Missing SUPABASE_URL / SUPABASE_SERVICE_KEY in backend/.env")
        sys.exit(1)

    client = create_client(supabase_url, supabase_key)
    print(f"Supabase URL: {supabase_url}")

    if not create_tables(client) or not verify_tables(client):
        print("\nDatabase setup failed")
        sys.exit(1)
    print("\nDatabase setup completed successfully!")
