"""
CSV upload adapter — turns an uploaded report file into raw rows for the
validator.

Accepts canonical snake_case headers and the legacy Portuguese report
headers ("Player ID", "Faturamento %", ...). Legacy metrics come as
Meta / Atual / % triplets: the percentage-of-goal column is the reported
value, and target and current are passed along for the validator to check.
Cells are read as text; numeric parsing is the validator's job.
"""
import io
import logging
import re
import unicodedata
from typing import Dict, List, Optional

import pandas as pd

from goalboard.errors import GoalboardError

logger = logging.getLogger('pipeline.csv_import')


class CSVImportError(GoalboardError):
    """The file could not be read as a report CSV."""


def _slug(header: str) -> str:
    text = unicodedata.normalize('NFKD', str(header)).encode('ascii', 'ignore').decode()
    text = text.strip().lower().replace('%', ' pct ')
    return re.sub(r'[^a-z0-9]+', '_', text).strip('_')


# legacy Portuguese metric name → metric
LEGACY_METRIC_NAMES = {
    'atividade': 'activity',
    'reais_por_ativo': 'revenue_per_asset',
    'faturamento': 'revenue',
    'multimarcas_por_ativo': 'multibrand_per_asset',
    'conversoes': 'conversions',
    'upa': 'upa',
}

# slugged header → canonical field
HEADER_ALIASES = {
    'representative_id': 'representative_id',
    'player_id': 'representative_id',
    'playerid': 'representative_id',
    'representative_name': 'representative_name',
    'player_name': 'representative_name',
    'nome': 'representative_name',
    'name': 'representative_name',
    'team': 'team',
    'equipe': 'team',
    'carteira': 'team',
    'report_date': 'report_date',
    'data': 'report_date',
    'data_relatorio': 'report_date',
    'date': 'report_date',
}
for _metric in LEGACY_METRIC_NAMES.values():
    HEADER_ALIASES[_metric] = _metric
    HEADER_ALIASES[f'{_metric}_target'] = f'{_metric}_target'
    HEADER_ALIASES[f'{_metric}_current'] = f'{_metric}_current'
# Meta / Atual / % triplets; the % column is the reported value
for _legacy, _metric in LEGACY_METRIC_NAMES.items():
    HEADER_ALIASES[f'{_legacy}_pct'] = _metric
    HEADER_ALIASES[f'{_legacy}_meta'] = f'{_metric}_target'
    HEADER_ALIASES[f'{_legacy}_atual'] = f'{_metric}_current'


def parse_report_csv(content: bytes, team: Optional[str] = None,
                     report_date: Optional[str] = None) -> List[Dict[str, str]]:
    """
    Parse CSV bytes into row dicts keyed by canonical field names.

    `team` and `report_date` fill those fields for files that carry no such
    column; a column value always wins over the default.
    """
    if not content or not content.strip():
        raise CSVImportError("file is empty")

    try:
        df = pd.read_csv(
            io.BytesIO(content),
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
            encoding='utf-8-sig',
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise CSVImportError(f"could not parse CSV: {e}") from e

    rename = {}
    for column in df.columns:
        field = HEADER_ALIASES.get(_slug(column))
        if field and field not in rename.values():
            rename[column] = field
    df = df[list(rename)].rename(columns=rename)

    if 'representative_id' not in df.columns:
        raise CSVImportError("missing a representative id column (e.g. 'Player ID')")

    df = df[df['representative_id'].str.strip() != ''].copy()
    if team is not None and 'team' not in df.columns:
        df['team'] = team
    if report_date is not None and 'report_date' not in df.columns:
        df['report_date'] = report_date

    rows = df.to_dict(orient='records')
    logger.info("Parsed %d rows from CSV (%d mapped columns)", len(rows), len(rename))
    return rows
