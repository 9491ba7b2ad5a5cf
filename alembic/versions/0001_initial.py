"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


transaction_type = postgresql.ENUM("deposit", "withdraw", "reward", "penalty", "system_adjust", name="transaction_type", create_type=False)
transaction_status = postgresql.ENUM("pending", "confirmed", "failed", "reversed", name="transaction_status", create_type=False)
vip_room_type = postgresql.ENUM("snake_game_vip", name="vip_room_type", create_type=False)
vip_ticket_status = postgresql.ENUM("issued", "consumed", "cancelled", "expired", name="vip_ticket_status", create_type=False)
referral_reward_type = postgresql.ENUM("game_commission", name="referral_reward_type", create_type=False)
referral_reward_status = postgresql.ENUM("pending", "confirmed", "failed", "capped", name="referral_reward_status", create_type=False)

ENUMS = (
    transaction_type,
    transaction_status,
    vip_room_type,
    vip_ticket_status,
    referral_reward_type,
    referral_reward_status,
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(64), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("referral_code", sa.String(16), nullable=True),
        sa.Column("referred_by_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("referred_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_wallet_address", "users", ["wallet_address"], unique=True)
    op.create_index("ix_users_referral_code", "users", ["referral_code"], unique=True)
    op.create_index("ix_users_referred_by_id", "users", ["referred_by_id"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tx_type", transaction_type, nullable=False),
        sa.Column("status", transaction_status, nullable=False, server_default="pending"),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("fee_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("signature", sa.String(128), nullable=True, unique=True),
        sa.Column("reference_code", sa.String(96), nullable=True, unique=True),
        sa.Column("reference_id", sa.Integer, nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"], unique=False)
    op.create_index("ix_transactions_reference_id", "transactions", ["reference_id"], unique=False)
    op.create_index("ix_transactions_user_status", "transactions", ["user_id", "status"], unique=False)
    op.create_index("ix_transactions_type_status", "transactions", ["tx_type", "status"], unique=False)

    op.create_table(
        "wallet_balances",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("available_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("locked_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("last_transaction_id", sa.Integer, nullable=True),
        sa.CheckConstraint("available_amount >= 0", name="ck_wallet_balances_available_non_negative"),
        sa.CheckConstraint("locked_amount >= 0", name="ck_wallet_balances_locked_non_negative"),
        *_timestamps(),
    )

    op.create_table(
        "vip_room_configs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("room_type", vip_room_type, nullable=False, unique=True),
        sa.Column("entry_fee", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("reward_rate_player", sa.Numeric(18, 6), nullable=False, server_default="0.9"),
        sa.Column("reward_rate_treasury", sa.Numeric(18, 6), nullable=False, server_default="0.1"),
        sa.Column("respawn_cost", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("max_clients", sa.Integer, nullable=False, server_default="20"),
        sa.Column("tick_rate", sa.Integer, nullable=False, server_default="60"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.CheckConstraint(
            "reward_rate_player + reward_rate_treasury <= 1",
            name="ck_vip_room_configs_rates_sum",
        ),
        *_timestamps(),
    )

    op.create_table(
        "vip_tickets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("ticket_code", sa.String(64), nullable=False, unique=True),
        sa.Column("room_type", vip_room_type, nullable=False, server_default="snake_game_vip"),
        sa.Column("entry_fee", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("room_instance_id", sa.String(64), nullable=True),
        sa.Column("status", vip_ticket_status, nullable=False, server_default="issued"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entry_transaction_id", sa.Integer, sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_vip_tickets_user_id", "vip_tickets", ["user_id"], unique=False)
    op.create_index("ix_vip_tickets_room_instance_id", "vip_tickets", ["room_instance_id"], unique=False)
    op.create_index("ix_vip_tickets_user_status", "vip_tickets", ["user_id", "status"], unique=False)

    op.create_table(
        "kill_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("kill_reference", sa.String(64), nullable=False, unique=True),
        sa.Column("room_instance_id", sa.String(64), nullable=False),
        sa.Column("room_type", vip_room_type, nullable=False, server_default="snake_game_vip"),
        sa.Column("killer_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("victim_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("killer_ticket_id", sa.Integer, sa.ForeignKey("vip_tickets.id"), nullable=True),
        sa.Column("victim_ticket_id", sa.Integer, sa.ForeignKey("vip_tickets.id"), nullable=True),
        sa.Column("reward_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("fee_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("reward_transaction_id", sa.Integer, sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_kill_logs_room_instance_id", "kill_logs", ["room_instance_id"], unique=False)
    op.create_index("ix_kill_logs_killer_user_id", "kill_logs", ["killer_user_id"], unique=False)
    op.create_index("ix_kill_logs_victim_user_id", "kill_logs", ["victim_user_id"], unique=False)
    op.create_index("ix_kill_logs_killer_ticket_id", "kill_logs", ["killer_ticket_id"], unique=False)
    op.create_index("ix_kill_logs_victim_ticket_id", "kill_logs", ["victim_ticket_id"], unique=False)

    op.create_table(
        "referral_rewards",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("referrer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("referee_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reward_type", referral_reward_type, nullable=False, server_default="game_commission"),
        sa.Column("action_type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", referral_reward_status, nullable=False, server_default="pending"),
        sa.Column("transaction_id", sa.Integer, sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("payout_transaction_id", sa.Integer, sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_referral_rewards_referrer_id", "referral_rewards", ["referrer_id"], unique=False)
    op.create_index("ix_referral_rewards_referee_id", "referral_rewards", ["referee_id"], unique=False)
    op.create_index(
        "uq_referral_rewards_referrer_tx_action",
        "referral_rewards",
        ["referrer_id", "transaction_id", "action_type"],
        unique=True,
    )
    op.create_index("ix_referral_rewards_referrer_status", "referral_rewards", ["referrer_id", "status"], unique=False)


def downgrade():
    op.drop_table("referral_rewards")
    op.drop_table("kill_logs")
    op.drop_table("vip_tickets")
    op.drop_table("vip_room_configs")
    op.drop_table("wallet_balances")
    op.drop_table("transactions")
    op.drop_table("users")
    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
