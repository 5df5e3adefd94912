"""001_baseline

Baseline migration for the route engine schema: routes and route stops.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ------------------------------------------------------------------
    # Enum types
    # ------------------------------------------------------------------
    op.execute(
        "CREATE TYPE route_type AS ENUM "
        "('REFILL', 'COLLECTION', 'MAINTENANCE', 'MIXED')"
    )
    op.execute(
        "CREATE TYPE route_stop_status AS ENUM "
        "('PENDING', 'EN_ROUTE', 'ARRIVED', 'DEPARTED', 'SKIPPED', 'CANCELLED')"
    )

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    # --- routes ---
    op.execute("""
        CREATE TABLE routes (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            organization_id UUID NOT NULL,
            operator_id UUID NOT NULL,
            name VARCHAR(200) NOT NULL,
            type route_type NOT NULL DEFAULT 'REFILL',
            planned_date DATE NOT NULL,
            planned_start_at TIMESTAMP WITH TIME ZONE,
            auto_optimize BOOLEAN NOT NULL DEFAULT false,
            estimated_duration_minutes INTEGER,
            estimated_distance_km DECIMAL(8, 2),
            actual_duration_minutes INTEGER,
            actual_distance_km DECIMAL(8, 2),
            started_at TIMESTAMP WITH TIME ZONE,
            completed_at TIMESTAMP WITH TIME ZONE,
            last_position_latitude DECIMAL(10, 7),
            last_position_longitude DECIMAL(10, 7),
            last_position_at TIMESTAMP WITH TIME ZONE,
            tracked_distance_km DECIMAL(10, 3),
            notes TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
            deleted_at TIMESTAMP WITH TIME ZONE
        )
    """)

    # --- route_stops ---
    op.execute("""
        CREATE TABLE route_stops (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            route_id UUID NOT NULL REFERENCES routes(id) ON DELETE CASCADE,
            machine_id UUID NOT NULL,
            task_id UUID,
            sequence INTEGER NOT NULL,
            status route_stop_status NOT NULL DEFAULT 'PENDING',
            estimated_arrival TIMESTAMP WITH TIME ZONE,
            actual_arrival TIMESTAMP WITH TIME ZONE,
            departed_at TIMESTAMP WITH TIME ZONE,
            latitude DECIMAL(10, 7),
            longitude DECIMAL(10, 7),
            notes TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
            deleted_at TIMESTAMP WITH TIME ZONE
        )
    """)

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------
    op.execute(
        "CREATE INDEX ix_routes_organization_planned_date "
        "ON routes (organization_id, planned_date)"
    )
    op.execute("CREATE INDEX ix_routes_organization_id ON routes (organization_id)")
    op.execute("CREATE INDEX ix_routes_operator_id ON routes (operator_id)")
    op.execute("CREATE INDEX ix_routes_planned_date ON routes (planned_date)")

    op.execute("CREATE INDEX ix_route_stops_route_id ON route_stops (route_id)")
    op.execute("CREATE INDEX ix_route_stops_machine_id ON route_stops (machine_id)")
    op.execute("CREATE INDEX ix_route_stops_task_id ON route_stops (task_id)")

    # Live stops of a route occupy distinct sequence slots
    op.execute(
        "CREATE UNIQUE INDEX uq_route_stops_route_sequence "
        "ON route_stops (route_id, sequence) WHERE deleted_at IS NULL"
    )

    # ------------------------------------------------------------------
    # updated_at trigger
    # ------------------------------------------------------------------
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ language 'plpgsql'
    """)
    for table in ("routes", "route_stops"):
        op.execute(
            f"CREATE TRIGGER update_{table}_updated_at "
            f"BEFORE UPDATE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()"
        )


def downgrade() -> None:
    for table in ("routes", "route_stops"):
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    op.execute("DROP TABLE IF EXISTS route_stops CASCADE")
    op.execute("DROP TABLE IF EXISTS routes CASCADE")

    op.execute("DROP TYPE IF EXISTS route_stop_status")
    op.execute("DROP TYPE IF EXISTS route_type")
