"""
Email Insights API - Data Module
================================

Loads the pre-computed email analysis document, normalizes its two
historical shapes into one in-memory representation, and answers the
read-only queries used by the API endpoints.

Version: 1.0
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from urllib.parse import unquote

logger = logging.getLogger(__name__)


PRIORITY_HIGH_THRESHOLD = 7
PRIORITY_MEDIUM_THRESHOLD = 5

# Half-open [lower, upper) score ranges; None is unbounded
PRIORITY_BANDS = {
    'high': (PRIORITY_HIGH_THRESHOLD, None),
    'medium': (PRIORITY_MEDIUM_THRESHOLD, PRIORITY_HIGH_THRESHOLD),
    'low': (None, PRIORITY_MEDIUM_THRESHOLD),
}

# Stable sort rank for action items; anything else sorts after 'low'
ACTION_PRIORITY_RANK = {'high': 0, 'medium': 1, 'low': 2}
UNRANKED_PRIORITY = len(ACTION_PRIORITY_RANK)

QUICK_VIEW_KEYS = (
    'fires_to_put_out',
    'quick_wins',
    'retention_risks',
    'positive_testimonials',
    'needs_response_today',
    'vip_communications',
)

DEFAULT_AI_INSIGHTS = {
    'executive_summary': 'AI insights not available',
    'key_points': [],
    'risks': [],
    'opportunities': [],
    'stakeholders': [],
}


# ============================================================================
# EXCEPTIONS
# ============================================================================

class EmailDataError(Exception):
    """Base error for email data lookups."""


class DataUnavailable(EmailDataError):
    """The loaded document does not carry the requested section."""


class SenderNotFound(EmailDataError):
    """No entry for the sender in the sender analysis."""

    def __init__(self, sender: str):
        super().__init__(f"Sender not found: {sender}")
        self.sender = sender


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass(frozen=True)
class ActionItem:
    """Action item extracted from an email by the offline analysis"""
    action: Optional[str]
    priority: Optional[str]
    type: str = 'general'
    deadline: Optional[str] = None


@dataclass(frozen=True)
class EmailAnalysis:
    """Canonical per-email analysis, built from either schema"""
    priority_score: Optional[float]
    sentiment_category: Optional[str]
    legacy_sentiments: Tuple[str, ...]
    response_required: Optional[str]
    topic_category: Optional[str]
    response_deadline: Optional[str]
    summary: str
    action_items: Tuple[ActionItem, ...]

    @property
    def sentiment(self) -> Optional[str]:
        """Enhanced sentiment if present, else the first legacy value."""
        if self.sentiment_category:
            return self.sentiment_category
        return self.legacy_sentiments[0] if self.legacy_sentiments else None

    def matches_sentiment(self, category: str) -> bool:
        return self.sentiment_category == category or category in self.legacy_sentiments


@dataclass(frozen=True)
class EmailRecord:
    """Single analyzed email plus the raw JSON it was built from"""
    id: Any
    subject: str
    sender: str
    analysis: Optional[EmailAnalysis]
    raw: Any = field(repr=False, compare=False)


@dataclass(frozen=True)
class SummaryStatistics:
    """Summary block with enhanced/legacy fallbacks already resolved"""
    total: Any = 0
    analyzed: Any = 0
    failed: Any = 0
    average_priority: Any = 0
    requiring_response: Any = 0
    critical_issues: Any = 0
    sentiments: Dict[str, Any] = field(default_factory=dict)
    priorities: Dict[str, Any] = field(default_factory=dict)
    topics: Dict[str, Any] = field(default_factory=dict)
    sender_analysis: Dict[str, Any] = field(default_factory=dict)
    high_priority_items: List[Any] = field(default_factory=list)
    ai_insights: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_AI_INSIGHTS))


# ============================================================================
# NORMALIZATION
# ============================================================================

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _first_present(*values: Any, default: Any = 0) -> Any:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return default


def _first_of_type(kind: type, *values: Any, default: Any) -> Any:
    for value in values:
        if isinstance(value, kind):
            return value
    return default


def _score(value: Any) -> Optional[float]:
    # bool is an int subclass but never a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def normalize_action_item(item: Dict[str, Any], email_deadline: Optional[str]) -> ActionItem:
    """
    Build an ActionItem, falling back to the email-level deadline.

    Args:
        item: Raw action item
        email_deadline: The parent email's response_deadline

    Returns:
        ActionItem with type and deadline defaults applied
    """
    return ActionItem(
        action=item.get('action'),
        priority=item.get('priority'),
        type=item.get('type') or 'general',
        deadline=item.get('deadline') or email_deadline,
    )


def normalize_analysis(analysis: Any) -> Optional[EmailAnalysis]:
    """
    Map an enhanced or legacy analysis object onto EmailAnalysis.

    Args:
        analysis: Raw 'analysis' value of an email (may be missing)

    Returns:
        EmailAnalysis, or None when the email was never analyzed
    """
    if not isinstance(analysis, dict):
        return None

    legacy_sentiment = _as_dict(analysis.get('sentiment'))
    legacy_values = (
        _as_dict(legacy_sentiment.get('ai_analysis')).get('overall_sentiment'),
        legacy_sentiment.get('classification'),
    )
    response_deadline = analysis.get('response_deadline')

    return EmailAnalysis(
        priority_score=_score(analysis.get('priority_score')),
        sentiment_category=_text(analysis.get('sentiment_category')),
        legacy_sentiments=tuple(v for v in legacy_values if _text(v)),
        response_required=analysis.get('response_required'),
        topic_category=analysis.get('topic_category'),
        response_deadline=response_deadline,
        summary=analysis.get('summary') or '',
        action_items=tuple(
            normalize_action_item(item, response_deadline)
            for item in _as_list(analysis.get('action_items'))
            if isinstance(item, dict)
        ),
    )


def normalize_email(email: Any) -> EmailRecord:
    # Malformed entries keep their slot so positional ids stay aligned
    if not isinstance(email, dict):
        return EmailRecord(id=None, subject='', sender='', analysis=None, raw=email)

    return EmailRecord(
        id=email.get('id'),
        subject=email.get('subject') or '',
        sender=email.get('sender') or '',
        analysis=normalize_analysis(email.get('analysis')),
        raw=email,
    )


def normalize_summary(summary: Dict[str, Any]) -> SummaryStatistics:
    """
    Resolve the enhanced/legacy summary layouts into SummaryStatistics.

    Enhanced fields win whenever they are present; legacy fields are used
    otherwise, and typed zero values fill whatever neither layout provides.

    Args:
        summary: Raw 'summary' object

    Returns:
        SummaryStatistics
    """
    overview = _as_dict(summary.get('overview'))
    statistics = _as_dict(summary.get('statistics'))
    distributions = _as_dict(summary.get('distributions'))

    return SummaryStatistics(
        total=_first_present(overview.get('total_analyzed'), statistics.get('total_emails')),
        analyzed=_first_present(overview.get('total_analyzed'), statistics.get('analyzed')),
        failed=_first_present(statistics.get('failed')),
        average_priority=_first_present(
            overview.get('average_priority'), statistics.get('avg_priority_score')
        ),
        requiring_response=_first_present(
            overview.get('requiring_response'), statistics.get('emails_requiring_action')
        ),
        critical_issues=_first_present(overview.get('critical_issues')),
        sentiments=_first_of_type(
            dict, distributions.get('by_sentiment'), distributions.get('sentiment'), default={}
        ),
        priorities=_first_of_type(
            dict, distributions.get('by_priority'), distributions.get('urgency'), default={}
        ),
        topics=_first_of_type(
            dict, distributions.get('by_topic'), distributions.get('topics'), default={}
        ),
        sender_analysis=_as_dict(summary.get('sender_analysis')),
        high_priority_items=_first_of_type(
            list, summary.get('high_impact_items'), summary.get('high_priority_items'), default=[]
        ),
        ai_insights=_first_of_type(dict, summary.get('ai_insights'), default=dict(DEFAULT_AI_INSIGHTS)),
    )


def normalize_quick_views(quick_views: Any) -> Dict[str, List[Any]]:
    views = _as_dict(quick_views)
    return {key: _as_list(views.get(key)) for key in QUICK_VIEW_KEYS}


# ============================================================================
# DATA CONTEXT
# ============================================================================

class EmailDataContext:
    """
    Immutable, process-lifetime view of the analysis document.

    Provides:
    - Raw emails/summary for passthrough endpoints
    - Priority, sentiment, response and topic filters
    - Sender lookup
    - Action item report
    - Assembled statistics and quick views
    """

    def __init__(
        self,
        emails: Tuple[EmailRecord, ...],
        summary: SummaryStatistics,
        quick_views: Dict[str, List[Any]],
        raw_summary: Dict[str, Any],
        source: str = 'default',
        has_emails: bool = True,
        has_summary: bool = True,
    ):
        self.emails = emails
        self.summary = summary
        self.raw_summary = raw_summary
        self.source = source
        self.has_emails = has_emails
        self.has_summary = has_summary
        self._quick_views = quick_views

    @classmethod
    def from_document(cls, document: Any, source: str = 'default') -> 'EmailDataContext':
        """
        Build a context from a parsed JSON document.

        Args:
            document: Parsed analysis document
            source: Where the document came from ('primary', 'legacy', 'default')

        Returns:
            EmailDataContext
        """
        document = _as_dict(document)
        raw_emails = document.get('emails')
        raw_summary = document.get('summary')

        if raw_emails is not None and not isinstance(raw_emails, list):
            logger.warning(f"Ignoring non-list 'emails' value in {source} data")
            raw_emails = None
        if raw_summary is not None and not isinstance(raw_summary, dict):
            logger.warning(f"Ignoring non-object 'summary' value in {source} data")
            raw_summary = None

        emails = tuple(
            normalize_email(email) for email in (raw_emails or [])
        )

        return cls(
            emails=emails,
            summary=normalize_summary(raw_summary or {}),
            quick_views=normalize_quick_views(document.get('quick_views')),
            raw_summary=raw_summary or {},
            source=source,
            has_emails=raw_emails is not None,
            has_summary=raw_summary is not None,
        )

    @classmethod
    def empty(cls) -> 'EmailDataContext':
        return cls.from_document({'emails': [], 'summary': {}})

    @property
    def data_loaded(self) -> bool:
        return self.source != 'default'

    # ------------------------------------------------------------------
    # Passthrough
    # ------------------------------------------------------------------

    def raw_emails(self) -> List[Dict[str, Any]]:
        if not self.has_emails:
            raise DataUnavailable('Email data not loaded')
        return [email.raw for email in self.emails]

    def quick_views(self) -> Dict[str, List[Any]]:
        return {key: list(items) for key, items in self._quick_views.items()}

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def _analyzed(self):
        return (email for email in self.emails if email.analysis is not None)

    def by_priority_band(self, level: str) -> List[EmailRecord]:
        """
        Filter emails by priority band.

        Args:
            level: 'high' (>= 7), 'medium' (5 to < 7) or 'low' (< 5)

        Returns:
            Matching emails; unknown levels match nothing
        """
        if level not in PRIORITY_BANDS:
            return []

        lower, upper = PRIORITY_BANDS[level]
        return [
            email for email in self._analyzed()
            if email.analysis.priority_score is not None
            and (lower is None or email.analysis.priority_score >= lower)
            and (upper is None or email.analysis.priority_score < upper)
        ]

    def by_sentiment(self, category: str) -> List[EmailRecord]:
        return [email for email in self._analyzed() if email.analysis.matches_sentiment(category)]

    def by_response_type(self, response_type: str) -> List[EmailRecord]:
        return [
            email for email in self._analyzed()
            if email.analysis.response_required == response_type
        ]

    def by_topic(self, category: str) -> List[EmailRecord]:
        return [email for email in self._analyzed() if email.analysis.topic_category == category]

    def high_priority(self) -> List[EmailRecord]:
        return self.by_priority_band('high')

    # ------------------------------------------------------------------
    # Lookups and reports
    # ------------------------------------------------------------------

    def sender_lookup(self, email_address: str) -> Any:
        """
        Look up a sender in the summary's sender analysis.

        Args:
            email_address: Sender address, possibly URL-encoded

        Returns:
            The sender's analysis entry

        Raises:
            SenderNotFound: if the sender has no entry
        """
        sender = unquote(email_address)
        if sender not in self.summary.sender_analysis:
            raise SenderNotFound(sender)
        return self.summary.sender_analysis[sender]

    def action_items_report(self) -> List[Dict[str, Any]]:
        """
        Flatten every email's action items, highest priority first.

        Items of equal priority keep the order they were encountered in.
        """
        report = []
        for index, email in enumerate(self.emails):
            if email.analysis is None:
                continue
            email_id = email.id if email.id not in (None, '') else index
            for item in email.analysis.action_items:
                report.append({
                    'emailSubject': email.subject,
                    'emailSender': email.sender,
                    'emailId': email_id,
                    'action': item.action,
                    'priority': item.priority,
                    'type': item.type,
                    'deadline': item.deadline,
                })

        return sorted(
            report,
            key=lambda entry: ACTION_PRIORITY_RANK.get(entry['priority'], UNRANKED_PRIORITY)
        )

    def stats(self) -> Dict[str, Any]:
        """Assemble the statistics payload."""
        if not self.has_summary:
            raise DataUnavailable('Summary data not available')

        summary = self.summary
        return {
            'total': summary.total,
            'analyzed': summary.analyzed,
            'failed': summary.failed,
            'avgPriorityScore': summary.average_priority,
            'emailsRequiringAction': summary.requiring_response,
            'sentiments': summary.sentiments,
            'urgency': summary.priorities,
            'topics': summary.topics,
            'senderAnalysis': summary.sender_analysis,
            'highPriorityItems': summary.high_priority_items,
            'aiInsights': summary.ai_insights,
        }

    def health_fields(self) -> Dict[str, Any]:
        first = self.emails[0] if self.emails else None
        enhanced = bool(first and first.analysis and first.analysis.sentiment_category)
        return {
            'dataLoaded': 'yes' if self.data_loaded else 'no',
            'emailCount': len(self.emails),
            'enhancedAnalysis': 'yes' if enhanced else 'no',
        }


# ============================================================================
# LOADING
# ============================================================================

def _read_json(path: str) -> Any:
    with open(path, encoding='utf-8') as f:
        return json.load(f)


def load_email_data(primary_path: str, legacy_path: str) -> EmailDataContext:
    """
    Load the analysis document, falling back to legacy data, then to empty data.

    Read or parse failures are logged and never raised.

    Args:
        primary_path: Enhanced analysis JSON file
        legacy_path: Legacy analysis JSON file

    Returns:
        EmailDataContext
    """
    try:
        if os.path.exists(primary_path):
            document = _read_json(primary_path)
            logger.info(f"Loaded enhanced email analysis data from {primary_path}")
            return EmailDataContext.from_document(document, source='primary')

        logger.warning(f"Enhanced data not found at {primary_path}, loading legacy data")
        document = _read_json(legacy_path)
        logger.info(f"Loaded legacy email data from {legacy_path}")
        return EmailDataContext.from_document(document, source='legacy')

    except (OSError, ValueError, RecursionError) as e:
        logger.error(f"Error loading email data: {e}")
        return EmailDataContext.empty()
