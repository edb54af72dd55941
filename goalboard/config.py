"""
Centralized configuration — env vars, cycle settings, team/metric tables.
"""
import os
from datetime import date


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis ─────────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')
# Postgres only; 0 disables
DB_STATEMENT_TIMEOUT_MS = int(os.getenv('DB_STATEMENT_TIMEOUT_MS', '60000'))

# ── Gamification platform ────────────────────────────────────────────────────
GAMIFICATION_API_URL = os.getenv('GAMIFICATION_API_URL', 'https://service2.funifier.com/v3')
GAMIFICATION_API_KEY = os.getenv('GAMIFICATION_API_KEY')
GAMIFICATION_AUTH_TOKEN = os.getenv('GAMIFICATION_AUTH_TOKEN')

# ── Action dispatch ──────────────────────────────────────────────────────────
DISPATCH_MAX_ATTEMPTS = int(os.getenv('DISPATCH_MAX_ATTEMPTS', '3'))
DISPATCH_BACKOFF_SECONDS = float(os.getenv('DISPATCH_BACKOFF_SECONDS', '1.0'))
DISPATCH_BACKOFF_MAX_SECONDS = float(os.getenv('DISPATCH_BACKOFF_MAX_SECONDS', '30.0'))
DISPATCH_TIMEOUT_SECONDS = float(os.getenv('DISPATCH_TIMEOUT_SECONDS', '10'))

# ── Ingestion ────────────────────────────────────────────────────────────────
INGEST_MAX_WORKERS = int(os.getenv('INGEST_MAX_WORKERS', '4'))
MAX_UPLOAD_BYTES = int(os.getenv('MAX_UPLOAD_BYTES', str(10 * 1024 * 1024)))

# 'cycle' compares against the latest snapshot in the row's own cycle;
# 'all' compares against the latest snapshot overall
INGEST_DIFF_SCOPE = os.getenv('INGEST_DIFF_SCOPE', 'cycle')

# Metric values are compared and stored at this many decimal places
METRIC_PRECISION = 4

# ── Cycles / backfill ────────────────────────────────────────────────────────
MIGRATION_BATCH_SIZE = int(os.getenv('MIGRATION_BATCH_SIZE', '50'))
CYCLE_LENGTH_DAYS = int(os.getenv('CYCLE_LENGTH_DAYS', '21'))
CYCLE_EPOCH = date.fromisoformat(os.getenv('CYCLE_EPOCH', '2025-01-06'))

# ── Slack notifications ──────────────────────────────────────────────────────
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL')

# ── Auth ─────────────────────────────────────────────────────────────────────
DASHBOARD_PASSWORD = os.getenv('DASHBOARD_PASSWORD')

# ── Team kinds ───────────────────────────────────────────────────────────────
TEAM_KINDS = [
    'CARTEIRA_0',
    'CARTEIRA_I',
    'CARTEIRA_II',
    'CARTEIRA_III',
    'CARTEIRA_IV',
    'ER',
]

# ── Metrics ──────────────────────────────────────────────────────────────────
METRICS = [
    'activity',
    'revenue_per_asset',
    'revenue',
    'multibrand_per_asset',
    'conversions',
    'upa',
]

# Team kind → metrics that team reports, in report order. All are required.
TEAM_METRICS = {
    'CARTEIRA_0':   ['conversions', 'revenue_per_asset', 'revenue'],
    'CARTEIRA_I':   ['activity', 'revenue_per_asset', 'revenue'],
    'CARTEIRA_II':  ['revenue_per_asset', 'activity', 'multibrand_per_asset'],
    'CARTEIRA_III': ['revenue', 'revenue_per_asset', 'multibrand_per_asset'],
    'CARTEIRA_IV':  ['revenue', 'revenue_per_asset', 'multibrand_per_asset'],
    'ER':           ['revenue', 'revenue_per_asset', 'upa'],
}

REQUIRED_METRICS = {team: list(metrics) for team, metrics in TEAM_METRICS.items()}

# Metric → action id registered on the gamification platform
METRIC_ACTION_IDS = {
    'activity':             'atividade',
    'revenue_per_asset':    'reais_por_ativo',
    'revenue':              'faturamento',
    'multibrand_per_asset': 'multimarcas_por_ativo',
    'conversions':          'conversoes',
    'upa':                  'upa',
}

# Metrics whose percentage-of-goal is capped at 100 when reported with a
# target and current value
BOUNDED_PERCENT_METRICS = ['conversions', 'upa']

# Allowed gap, in percentage points, between a reported percentage and
# current / target * 100
PERCENT_TOLERANCE = 1.0
