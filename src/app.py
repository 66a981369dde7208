"""
Email Insights API Server
=========================

Flask application serving pre-computed email analysis to the dashboard.
Handles priority/sentiment/topic filtering, sender insights, the action
item report, and AI chat over the analysis via OpenAI.

Version: 1.0
"""

import os
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS

from email_data import (
    QUICK_VIEW_KEYS,
    DataUnavailable,
    EmailDataContext,
    EmailRecord,
    SenderNotFound,
    load_email_data,
)

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

CHAT_NOT_CONFIGURED_MESSAGE = (
    'OpenAI API key not configured. Please add OPENAI_API_KEY to your .env file.'
)
CHAT_FAILED_MESSAGE = 'Failed to get AI response. Please check your OpenAI API key and try again.'


# ============================================================================
# CONFIGURATION
# ============================================================================

class ConfigError(RuntimeError):
    """Raised when an environment setting cannot be parsed."""


@dataclass
class Settings:
    """Runtime configuration loaded from the environment"""
    openai_api_key: str = ''
    openai_model: str = 'gpt-3.5-turbo'
    openai_temperature: float = 0.7
    openai_max_tokens: int = 500
    openai_timeout: float = 30.0
    host: str = '0.0.0.0'
    port: int = 3000
    email_data_path: str = 'enhanced_email_analysis.json'
    legacy_email_data_path: str = 'LiveEmailData.json'
    static_dir: str = 'public'
    email_audience: str = 'NRA members'
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    debug: bool = False

    @property
    def openai_configured(self) -> bool:
        return bool(self.openai_api_key)


def _env_number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e


def load_settings() -> Settings:
    """
    Load settings from environment variables.

    Returns:
        Settings

    Raises:
        ConfigError: if a numeric setting is malformed
    """
    return Settings(
        openai_api_key=os.getenv('OPENAI_API_KEY', '').strip(),
        openai_model=os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo'),
        openai_temperature=_env_number('OPENAI_TEMPERATURE', '0.7', float),
        openai_max_tokens=_env_number('OPENAI_MAX_TOKENS', '500', int),
        openai_timeout=_env_number('OPENAI_TIMEOUT', '30', float),
        host=os.getenv('HOST', '0.0.0.0'),
        port=_env_number('PORT', '3000', int),
        email_data_path=os.getenv('EMAIL_DATA_PATH', 'enhanced_email_analysis.json'),
        legacy_email_data_path=os.getenv('LEGACY_EMAIL_DATA_PATH', 'LiveEmailData.json'),
        static_dir=os.getenv('STATIC_DIR', 'public'),
        email_audience=os.getenv('EMAIL_AUDIENCE', 'NRA members'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        log_file=os.getenv('LOG_FILE') or None,
        debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true',
    )


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """Configure console logging, plus a log file when one is given."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )


# ============================================================================
# PROMPT BUILDER
# ============================================================================

QUICK_VIEW_LABELS = {
    'fires_to_put_out': ('Fires to Put Out', 'critical issues'),
    'quick_wins': ('Quick Wins', 'easy responses'),
    'retention_risks': ('Retention Risks', 'cancellation threats'),
    'positive_testimonials': ('Positive Testimonials', 'success stories'),
    'needs_response_today': ('Needs Response Today', 'same-day replies'),
    'vip_communications': ('VIP Communications', 'VIP messages'),
}


def _or_empty(value: Any) -> Any:
    return '' if value is None else value


class ContextPromptBuilder:
    """
    Build the system prompt that grounds chat answers in the analysis.
    """

    def __init__(self, context: EmailDataContext, audience: str = 'NRA members'):
        self.context = context
        self.audience = audience

    def build(self) -> str:
        """
        Assemble the full system prompt.

        Returns:
            Prompt text with statistics, distributions, high priority
            emails and quick view counts
        """
        summary = self.context.summary

        sections = [
            [f"You are analyzing emails from {self.audience} with enhanced AI analysis."],
            [
                'Summary Statistics:',
                f"- Total emails: {summary.analyzed}",
                f"- Average priority score: {summary.average_priority}",
                f"- Emails requiring response: {summary.requiring_response}",
            ],
            ['Sentiment Distribution:'] + self._distribution_lines(summary.sentiments),
            ['Priority Distribution:'] + self._distribution_lines(summary.priorities),
            ['Topic Categories:'] + self._distribution_lines(summary.topics),
            ['High Priority Emails (7+):'] + [
                self._email_line(email) for email in self.context.high_priority()
            ],
            ['Quick Views Summary:'] + self._quick_view_lines(),
            ['Please provide helpful, specific analysis based on this enhanced analysis '
             'when answering questions.'],
        ]

        return '\n\n'.join('\n'.join(lines) for lines in sections)

    @staticmethod
    def _distribution_lines(distribution: Dict[str, Any]) -> List[str]:
        return [f"- {key}: {_or_empty(count)}" for key, count in distribution.items()]

    @staticmethod
    def _email_line(email: EmailRecord) -> str:
        analysis = email.analysis
        return (
            f'- "{email.subject}" from {email.sender} '
            f"(Priority: {analysis.priority_score:.1f}, {_or_empty(analysis.sentiment)}, "
            f"Response: {_or_empty(analysis.response_required)}) - {analysis.summary}"
        )

    def _quick_view_lines(self) -> List[str]:
        views = self.context.quick_views()
        lines = []
        for key in QUICK_VIEW_KEYS:
            label, noun = QUICK_VIEW_LABELS[key]
            lines.append(f"- {label}: {len(views[key])} {noun}")
        return lines


# ============================================================================
# CHAT CLIENT MODULE
# ============================================================================

class ChatNotConfigured(RuntimeError):
    """No OpenAI API key is configured."""


class ChatCompletionError(RuntimeError):
    """The chat completion request failed."""


class ChatClient:
    """
    OpenAI chat completion client for dashboard questions.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: Optional[float] = None
    ):
        """
        Initialize chat client.

        Args:
            api_key: OpenAI API key (empty disables chat)
            model: Model name (e.g., 'gpt-3.5-turbo')
            temperature: Temperature setting (0-2)
            max_tokens: Maximum tokens in response
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = None

        logger.info(f"Chat client initialized: {model}, temp={temperature}")

    @classmethod
    def from_settings(cls, settings: Settings) -> 'ChatClient':
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout=settings.openai_timeout
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def complete(self, system_prompt: str, user_message: str) -> str:
        """
        Ask the model a question with the analysis prompt as system message.

        Args:
            system_prompt: Context prompt
            user_message: The user's question

        Returns:
            The model's reply text

        Raises:
            ChatNotConfigured: if no API key is set
            ChatCompletionError: if the API call fails or returns no text
        """
        if not self.configured:
            raise ChatNotConfigured(CHAT_NOT_CONFIGURED_MESSAGE)

        try:
            logger.info(f"Calling OpenAI API: {self.model}")
            logger.debug(f"System prompt length: {len(system_prompt)} chars")

            start_time = time.time()

            response = self._get_client().chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message}
                ]
            )

            api_time = time.time() - start_time
            content = response.choices[0].message.content

        except Exception as e:
            logger.error(f"OpenAI API call failed: {e}")
            logger.error(traceback.format_exc())
            raise ChatCompletionError(str(e)) from e

        if content is None:
            logger.error("OpenAI API returned an empty message")
            raise ChatCompletionError('Empty response from model')

        logger.info(f"OpenAI API call successful: {api_time:.2f}s")
        return content


# ============================================================================
# API ENDPOINTS
# ============================================================================

api = Blueprint('api', __name__, url_prefix='/api')


def _email_data() -> EmailDataContext:
    return current_app.config['EMAIL_DATA']


def _emails_response(emails: List[EmailRecord]):
    return jsonify({'emails': [email.raw for email in emails]})


@api.route('/emails', methods=['GET'])
def get_emails():
    """Return all emails with the raw summary."""
    context = _email_data()
    try:
        emails = context.raw_emails()
    except DataUnavailable as e:
        logger.error(f"Emails endpoint error: {e}")
        return jsonify({'error': 'Email data not loaded'}), 500

    return jsonify({
        'emails': emails,
        'summary': context.raw_summary
    })


@api.route('/stats', methods=['GET'])
def get_stats():
    """Return summary statistics with enhanced/legacy fallbacks resolved."""
    try:
        return jsonify(_email_data().stats())
    except DataUnavailable as e:
        logger.error(f"Stats endpoint error: {e}")
        return jsonify({'error': 'Summary data not available'}), 500


@api.route('/quick-views', methods=['GET'])
def get_quick_views():
    return jsonify(_email_data().quick_views())


@api.route('/emails/priority/<level>', methods=['GET'])
def get_emails_by_priority(level):
    """
    Get emails in a priority band.

    Path Parameters:
        level: high (7+), medium (5 to 7) or low (below 5)
    """
    return _emails_response(_email_data().by_priority_band(level))


@api.route('/emails/sentiment/<sentiment>', methods=['GET'])
def get_emails_by_sentiment(sentiment):
    return _emails_response(_email_data().by_sentiment(sentiment))


@api.route('/emails/response/<response_type>', methods=['GET'])
def get_emails_by_response(response_type):
    return _emails_response(_email_data().by_response_type(response_type))


@api.route('/emails/topic/<category>', methods=['GET'])
def get_emails_by_topic(category):
    return _emails_response(_email_data().by_topic(category))


@api.route('/senders/<path:email>', methods=['GET'])
def get_sender(email):
    """Get sender insights; the address may be URL-encoded."""
    try:
        return jsonify(_email_data().sender_lookup(email))
    except SenderNotFound as e:
        logger.info(str(e))
        return jsonify({'error': 'Sender not found'}), 404


@api.route('/chat', methods=['POST'])
def chat():
    """
    Answer a question about the analysis.

    Body:
        message: The user's question
    """
    chat_client = current_app.config['CHAT_CLIENT']

    if not chat_client.configured:
        logger.warning("Chat requested but OPENAI_API_KEY is not configured")
        return jsonify({'error': CHAT_NOT_CONFIGURED_MESSAGE}), 500

    request_data = request.get_json(silent=True)
    message = request_data.get('message') if isinstance(request_data, dict) else None

    if not isinstance(message, str) or not message.strip():
        return jsonify({'error': 'Request body must include a message'}), 400

    settings = current_app.config['SETTINGS']
    system_prompt = ContextPromptBuilder(_email_data(), settings.email_audience).build()

    try:
        reply = chat_client.complete(system_prompt, message)
    except ChatNotConfigured:
        return jsonify({'error': CHAT_NOT_CONFIGURED_MESSAGE}), 500
    except ChatCompletionError as e:
        logger.error(f"Chat endpoint error: {e}")
        return jsonify({'error': CHAT_FAILED_MESSAGE}), 500

    return jsonify({'response': reply})


@api.route('/action-items', methods=['GET'])
def get_action_items():
    return jsonify({'actionItems': _email_data().action_items_report()})


@api.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    chat_client = current_app.config['CHAT_CLIENT']
    body = {
        'status': 'ok',
        'openai': 'configured' if chat_client.configured else 'not configured',
    }
    body.update(_email_data().health_fields())
    return jsonify(body)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    context: Optional[EmailDataContext] = None,
    chat_client: Optional[Any] = None
) -> Flask:
    """
    Create the Flask application.

    Args:
        settings: Runtime settings (loaded from the environment if omitted)
        context: Loaded email data (read from disk if omitted)
        chat_client: Object with 'configured' and 'complete()' (ChatClient if omitted)

    Returns:
        Configured Flask app
    """
    settings = settings or load_settings()
    if context is None:
        context = load_email_data(settings.email_data_path, settings.legacy_email_data_path)
    if chat_client is None:
        chat_client = ChatClient.from_settings(settings)

    static_dir = os.path.abspath(settings.static_dir)
    app = Flask(__name__, static_folder=static_dir, static_url_path='')
    app.config.update(
        SETTINGS=settings,
        EMAIL_DATA=context,
        CHAT_CLIENT=chat_client
    )
    app.json.sort_keys = False

    CORS(app)
    app.register_blueprint(api)

    @app.route('/', methods=['GET'])
    def dashboard():
        return send_from_directory(static_dir, 'index.html')

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Unhandled error: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return app


def log_startup_summary(settings: Settings, context: EmailDataContext) -> None:
    """Log configuration and data status for the operator."""
    logger.info(f"Email Insights API Server running on http://localhost:{settings.port}")
    logger.info(f"Dashboard available at http://localhost:{settings.port}")

    if not settings.openai_configured:
        logger.warning("OPENAI_API_KEY not found in environment variables")
        logger.warning("AI chat features will not work without it")
    else:
        logger.info(f"OpenAI API key configured, model: {settings.openai_model}")

    summary = context.summary
    logger.info(f"Data source: {context.source}")
    logger.info(f"Loaded {len(context.emails)} emails")
    logger.info(f"Average priority score: {summary.average_priority}")
    logger.info(f"Emails requiring action: {summary.requiring_response}")
    logger.info(f"Critical issues: {summary.critical_issues}")

    views = context.quick_views()
    for key in QUICK_VIEW_KEYS:
        label, _ = QUICK_VIEW_LABELS[key]
        logger.info(f"Quick view - {label}: {len(views[key])}")


# ============================================================================
# MAIN
# ============================================================================

def main():
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_file)

    logger.info("Starting Email Insights API Server...")

    context = load_email_data(settings.email_data_path, settings.legacy_email_data_path)
    app = create_app(settings, context)
    log_startup_summary(settings, context)

    app.run(
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
        threaded=True
    )


if __name__ == '__main__':
    main()
