"""
AI Service for MediOps resources
- PDF text extraction and AI resource extraction
- Low-stock inventory alerts
- Resource demand forecasting
"""

import json
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pdfplumber
from openai import OpenAI, OpenAIError
from sklearn.ensemble import RandomForestRegressor

from errors import ExtractionError
from normalization import LIST_FIELDS, SCALAR_FIELDS, Inventory

log = logging.getLogger(__name__)

DEFAULT_MODEL = 'gpt-4o-mini'

RESOURCE_PROMPT = """You are a hospital operations assistant. Read the resource report below and
extract the hospital's staff and inventory.

Respond with JSON only, no text outside the JSON, using exactly these keys:
{
  "doctors": [{"name": "", "available_days": "", "time": ""}],
  "nurses": [{"name": "", "available_days": "", "time": ""}],
  "inventory": {
    "medicines": [{"name": "", "count": 0}],
    "saline": 0, "injections": 0, "antibodies": 0, "ot_rooms": 0,
    "general_beds": 0, "available_nurses_count": 0,
    "instruments": [{"name": "", "count": 0}],
    "ecg_machines": 0, "ct_scan": 0, "endoscopy": 0, "bp_machines": 0,
    "ultrasonography": 0, "xray_machines": 0,
    "other_equipment": [{"name": "", "count": 0}]
  }
}
Use 0 for counts and [] for lists that the report does not mention."""


class ResourceExtractor:
    """PDF text extraction plus the AI call that structures it"""

    def __init__(self):
        self.api_key = None
        self.model = DEFAULT_MODEL
        self.base_url = None
        self.timeout = 60.0
        self.max_retries = 2
        self._client = None

    def init_app(self, app):
        self.api_key = app.config.get('OPENAI_API_KEY')
        self.model = app.config.get('OPENAI_MODEL') or DEFAULT_MODEL
        self.base_url = app.config.get('OPENAI_BASE_URL')
        self.timeout = float(app.config.get('OPENAI_TIMEOUT', 60.0))
        self.max_retries = int(app.config.get('OPENAI_MAX_RETRIES', 2))
        self._client = None

    def _get_client(self) -> OpenAI:
        if not self.api_key:
            raise ExtractionError('OPENAI_API_KEY is not configured')
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url or None,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    def extract_text(self, pdf_path: str) -> Tuple[str, int]:
        """Return (text, page_count) for a PDF on disk"""
        try:
            with pdfplumber.open(pdf_path) as pdf:
                pages_text = [page.extract_text() or '' for page in pdf.pages]
        except Exception as e:
            log.error('Error extracting text from %s: %s', pdf_path, e)
            raise ExtractionError('Failed to extract text from PDF') from e

        text = '\n'.join(pages_text).strip()
        if not text:
            raise ExtractionError('No text could be extracted from the PDF')
        return text, len(pages_text)

    def analyze_resources(self, text: str) -> Any:
        """Ask the model for structured resource data.

        Returns whatever JSON the model produced (unwrapping a one-element
        list), or the raw response text when it is not JSON. Shape checking is
        left to the normalization layer.
        """
        client = self._get_client()
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': RESOURCE_PROMPT},
                    {'role': 'user', 'content': text},
                ],
                temperature=0.1,
            )
        except OpenAIError as e:
            raise ExtractionError(f'AI analysis failed: {e}') from e

        content = completion.choices[0].message.content or ''
        return parse_model_json(content)


def parse_model_json(content: str) -> Any:
    cleaned = content.strip().removeprefix('```json').removeprefix('```').removesuffix('```').strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        log.warning('Could not parse AI response as JSON, returning raw text')
        return content
    if isinstance(parsed, list) and len(parsed) == 1:
        return parsed[0]
    return parsed


class InventoryAlertSystem:
    """Low-stock alerts over an inventory view"""

    def __init__(self, threshold: int = 5):
        self.threshold = threshold

    def check_alerts(self, inventory: Inventory, threshold: Optional[int] = None) -> List[Dict]:
        """Alert for every scalar field and list entry whose count is below the threshold"""
        limit = self.threshold if threshold is None else threshold
        alerts = []

        for name in SCALAR_FIELDS:
            count = getattr(inventory, name)
            if count < limit:
                alerts.append(self._alert(name, 'scalar', count, limit))

        for list_field in LIST_FIELDS:
            for item in getattr(inventory, list_field):
                if item.count < limit:
                    alerts.append(self._alert(item.name, list_field, item.count, limit))

        return alerts

    @staticmethod
    def _alert(item_name: str, category: str, count: int, threshold: int) -> Dict:
        return {
            'item': item_name,
            'category': category,
            'count': count,
            'threshold': threshold,
            'message': f'LOW STOCK: {item_name} is running low ({count} remaining)',
        }


DEMAND_KINDS = ('beds', 'oxygen_cylinders', 'dialysis_sessions')


class ResourceDemandForecaster:
    """Daily resource demand forecast from allocation history"""

    min_training_days = 10

    def _daily_series(self, history: List[Dict]) -> Tuple[List[date], Dict[str, List[float]]]:
        per_day = defaultdict(lambda: dict.fromkeys(DEMAND_KINDS, 0))
        for entry in history:
            when = entry['date']
            if isinstance(when, str):
                when = datetime.fromisoformat(when)
            day = when.date() if isinstance(when, datetime) else when
            for kind in DEMAND_KINDS:
                per_day[day][kind] += entry.get(kind, 0)

        if not per_day:
            return [], {kind: [] for kind in DEMAND_KINDS}

        first, last = min(per_day), max(per_day)
        days = [first + timedelta(days=i) for i in range((last - first).days + 1)]
        series = {kind: [float(per_day[d][kind]) if d in per_day else 0.0 for d in days]
                  for kind in DEMAND_KINDS}
        return days, series

    @staticmethod
    def _features(day: date, origin: date, span: int) -> List[float]:
        return [
            day.weekday() / 6.0,
            (day - origin).days / float(span),
        ]

    def forecast(self, history: List[Dict], days: int = 7, today: Optional[date] = None) -> Dict:
        """Predict per-day demand for the ``days`` days after ``today``"""
        today = today or date.today()
        observed, series = self._daily_series(history)
        future = [today + timedelta(days=i) for i in range(1, days + 1)]
        predictions = {}

        if len(observed) < self.min_training_days:
            method = 'heuristic'
            for kind in DEMAND_KINDS:
                mean = float(np.mean(series[kind])) if observed else 0.0
                predictions[kind] = [mean] * days
        else:
            method = 'ml'
            origin, span = observed[0], len(observed)
            X = np.array([self._features(d, origin, span) for d in observed])
            X_future = np.array([self._features(d, origin, span) for d in future])
            for kind in DEMAND_KINDS:
                model = RandomForestRegressor(n_estimators=50, random_state=42, max_depth=5)
                model.fit(X, np.array(series[kind]))
                predictions[kind] = model.predict(X_future).tolist()

        rows = []
        for i, day in enumerate(future):
            row = {'date': day.isoformat()}
            for kind in DEMAND_KINDS:
                row[kind] = round(max(predictions[kind][i], 0.0), 2)
            rows.append(row)

        return {
            'method': method,
            'horizonDays': days,
            'historyDays': len(observed),
            'forecast': rows,
        }


# Global instances
resource_extractor = ResourceExtractor()
inventory_alert = InventoryAlertSystem()
demand_forecaster = ResourceDemandForecaster()
