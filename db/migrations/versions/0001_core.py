from __future__ import annotations

from alembic import op

revision = "0001_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    # Tenants and identities
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS organizations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(320) UNIQUE NOT NULL,
            hashed_password VARCHAR(1024) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            is_superuser BOOLEAN NOT NULL DEFAULT FALSE,
            is_verified BOOLEAN NOT NULL DEFAULT FALSE,
            org_id UUID REFERENCES organizations(id) ON DELETE SET NULL
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_users_org_id ON users (org_id);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            key_prefix VARCHAR(16) NOT NULL UNIQUE,
            key_hash VARCHAR(64) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_used_at TIMESTAMPTZ,
            revoked_at TIMESTAMPTZ
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_api_keys_org_id ON api_keys (org_id);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id BIGSERIAL PRIMARY KEY,
            org_id UUID NOT NULL,
            actor TEXT,
            action TEXT NOT NULL,
            resource_type TEXT NOT NULL,
            resource_id TEXT,
            details JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_audit_log_org_id ON audit_log (org_id, created_at DESC);")

    # Business entities
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS companies (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            legal_name TEXT NOT NULL,
            normalized_legal_name TEXT NOT NULL,
            identifier VARCHAR(32),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ux_companies_org_normalized_name UNIQUE (org_id, normalized_legal_name)
        );
        """
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_companies_org_identifier ON companies (org_id, identifier) "
        "WHERE identifier IS NOT NULL;"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS company_aliases (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            company_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            alias_name TEXT NOT NULL,
            normalized_alias TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ux_company_aliases_org_normalized UNIQUE (org_id, normalized_alias)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_company_aliases_company_id ON company_aliases (company_id);")

    # Submissions and files
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS submissions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            org_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            ingestion_method VARCHAR(16) NOT NULL DEFAULT 'dashboard',
            status VARCHAR(24) NOT NULL DEFAULT 'pending',
            files_total INTEGER NOT NULL DEFAULT 0,
            files_processed INTEGER NOT NULL DEFAULT 0,
            company_id UUID REFERENCES companies(id) ON DELETE SET NULL,
            created_by TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_submissions_processed_le_total CHECK (files_processed <= files_total)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_submissions_org_id ON submissions (org_id, created_at DESC);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS files (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            submission_id UUID NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            filename TEXT NOT NULL,
            storage_path TEXT NOT NULL UNIQUE,
            file_size_bytes BIGINT NOT NULL,
            mime_type VARCHAR(128) NOT NULL DEFAULT 'application/pdf',
            classification_type VARCHAR(32),
            classification_confidence NUMERIC(3, 2),
            extraction_job_id TEXT,
            status VARCHAR(16) NOT NULL DEFAULT 'uploaded',
            error_text TEXT,
            processing_started_at TIMESTAMPTZ,
            processing_completed_at TIMESTAMPTZ,
            status_changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_files_submission_id ON files (submission_id);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_files_org_id ON files (org_id);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_files_extraction_job_id ON files (extraction_job_id);")
    # the stuck-file sweep scans in-flight rows by age
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_files_in_flight ON files (status_changed_at) "
        "WHERE status IN ('classifying', 'processing');"
    )

    # Extracted data
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            submission_id UUID NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            company_id UUID REFERENCES companies(id) ON DELETE SET NULL,
            account_number_masked VARCHAR(16) NOT NULL,
            account_number_hash VARCHAR(64) NOT NULL,
            bank_name TEXT,
            holder_name TEXT,
            latest_balance NUMERIC(18, 2),
            last_transaction_date DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ux_accounts_submission_number UNIQUE (submission_id, account_number_hash)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS statements (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            file_id UUID NOT NULL UNIQUE REFERENCES files(id) ON DELETE CASCADE,
            submission_id UUID NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
            account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            extraction_job_id TEXT NOT NULL,
            period_start DATE,
            period_end DATE,
            opening_balance NUMERIC(18, 2) NOT NULL,
            closing_balance NUMERIC(18, 2) NOT NULL,
            total_credits NUMERIC(18, 2) NOT NULL DEFAULT 0,
            total_debits NUMERIC(18, 2) NOT NULL DEFAULT 0,
            credit_count INTEGER NOT NULL DEFAULT 0,
            debit_count INTEGER NOT NULL DEFAULT 0,
            reported_total_credits NUMERIC(18, 2),
            reported_total_debits NUMERIC(18, 2),
            transaction_count INTEGER NOT NULL DEFAULT 0,
            reconciliation_difference NUMERIC(18, 2) NOT NULL,
            is_reconciled BOOLEAN NOT NULL,
            partial_success BOOLEAN NOT NULL DEFAULT FALSE,
            extraction_errors JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_statements_submission_id ON statements (submission_id);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            statement_id UUID NOT NULL REFERENCES statements(id) ON DELETE CASCADE,
            submission_id UUID NOT NULL,
            org_id UUID NOT NULL,
            sequence_number INTEGER NOT NULL,
            transaction_date DATE NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            amount NUMERIC(18, 2) NOT NULL,
            running_balance NUMERIC(18, 2),
            transaction_type VARCHAR(16) NOT NULL,
            category TEXT,
            merchant TEXT,
            is_recurring BOOLEAN NOT NULL DEFAULT FALSE,
            CONSTRAINT ux_transactions_statement_sequence UNIQUE (statement_id, sequence_number)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_transactions_submission_id ON transactions (submission_id);")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS applications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            file_id UUID NOT NULL UNIQUE REFERENCES files(id) ON DELETE CASCADE,
            submission_id UUID NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            company_id UUID REFERENCES companies(id) ON DELETE SET NULL,
            extraction_job_id TEXT NOT NULL,
            source VARCHAR(16) NOT NULL,
            company_legal_name TEXT NOT NULL,
            company_dba_name TEXT,
            company_identifier VARCHAR(32),
            company_industry TEXT,
            company_address JSONB,
            company_phone TEXT,
            company_email TEXT,
            company_website TEXT,
            business_structure TEXT,
            business_start_date DATE,
            annual_revenue NUMERIC(18, 2),
            amount_requested NUMERIC(18, 2),
            loan_purpose TEXT,
            owner_1_first_name TEXT NOT NULL,
            owner_1_last_name TEXT NOT NULL,
            owner_1_date_of_birth DATE,
            owner_1_ownership_pct NUMERIC(5, 2),
            owner_1_email TEXT,
            owner_1_phone TEXT,
            owner_1_address JSONB,
            owner_2_first_name TEXT,
            owner_2_last_name TEXT,
            owner_2_date_of_birth DATE,
            owner_2_ownership_pct NUMERIC(5, 2),
            owner_2_email TEXT,
            owner_2_phone TEXT,
            owner_2_address JSONB,
            confidence_score NUMERIC(3, 2) NOT NULL,
            uncertain_fields JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_applications_owner_2_complete CHECK (
                (owner_2_first_name IS NULL AND owner_2_last_name IS NULL
                 AND owner_2_date_of_birth IS NULL AND owner_2_ownership_pct IS NULL)
                OR
                (owner_2_first_name IS NOT NULL AND owner_2_last_name IS NOT NULL
                 AND owner_2_date_of_birth IS NOT NULL AND owner_2_ownership_pct IS NOT NULL)
            )
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_applications_submission_id ON applications (submission_id);")

    # Rollups
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS submission_metrics (
            submission_id UUID PRIMARY KEY REFERENCES submissions(id) ON DELETE CASCADE,
            date_range_start DATE,
            date_range_end DATE,
            total_deposits NUMERIC(18, 2) NOT NULL DEFAULT 0,
            deposit_count INTEGER NOT NULL DEFAULT 0,
            largest_deposit NUMERIC(18, 2),
            total_withdrawals NUMERIC(18, 2) NOT NULL DEFAULT 0,
            withdrawal_count INTEGER NOT NULL DEFAULT 0,
            largest_withdrawal NUMERIC(18, 2),
            avg_daily_balance NUMERIC(18, 2),
            min_balance NUMERIC(18, 2),
            max_balance NUMERIC(18, 2),
            true_revenue NUMERIC(18, 2) NOT NULL DEFAULT 0,
            true_revenue_count INTEGER NOT NULL DEFAULT 0,
            negative_balance_days INTEGER NOT NULL DEFAULT 0,
            low_balance_days INTEGER NOT NULL DEFAULT 0,
            nsf_count INTEGER NOT NULL DEFAULT 0,
            nsf_total_amount NUMERIC(18, 2) NOT NULL DEFAULT 0,
            total_mca_debits NUMERIC(18, 2) NOT NULL DEFAULT 0,
            mca_debit_count INTEGER NOT NULL DEFAULT 0,
            total_transactions INTEGER NOT NULL DEFAULT 0,
            categorized_count INTEGER NOT NULL DEFAULT 0,
            uncategorized_count INTEGER NOT NULL DEFAULT 0,
            account_count INTEGER NOT NULL DEFAULT 0,
            statement_count INTEGER NOT NULL DEFAULT 0,
            calculated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )

    # Dispatch outbox and callback audit
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS dispatch_outbox (
            id BIGSERIAL PRIMARY KEY,
            file_id UUID NOT NULL REFERENCES files(id) ON DELETE CASCADE,
            org_id UUID NOT NULL,
            kind VARCHAR(16) NOT NULL,
            target_url TEXT NOT NULL,
            payload JSONB NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            outcome VARCHAR(16) NOT NULL DEFAULT 'pending',
            job_id TEXT,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_dispatch_outbox_file_id ON dispatch_outbox (file_id);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_dispatch_outbox_pending ON dispatch_outbox (created_at) WHERE outcome = 'pending';")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS callback_receipts (
            id BIGSERIAL PRIMARY KEY,
            file_id UUID,
            org_id UUID,
            job_id TEXT,
            document_type VARCHAR(32),
            outcome VARCHAR(16) NOT NULL,
            error TEXT,
            received_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_callback_receipts_file_id ON callback_receipts (file_id);")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS callback_receipts;")
    op.execute("DROP TABLE IF EXISTS dispatch_outbox;")
    op.execute("DROP TABLE IF EXISTS submission_metrics;")
    op.execute("DROP TABLE IF EXISTS applications;")
    op.execute("DROP TABLE IF EXISTS transactions;")
    op.execute("DROP TABLE IF EXISTS statements;")
    op.execute("DROP TABLE IF EXISTS accounts;")
    op.execute("DROP TABLE IF EXISTS files;")
    op.execute("DROP TABLE IF EXISTS submissions;")
    op.execute("DROP TABLE IF EXISTS company_aliases;")
    op.execute("DROP TABLE IF EXISTS companies;")
    op.execute("DROP TABLE IF EXISTS audit_log;")
    op.execute("DROP TABLE IF EXISTS api_keys;")
    op.execute("DROP TABLE IF EXISTS users;")
    op.execute("DROP TABLE IF EXISTS organizations;")
