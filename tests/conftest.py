import json

import pytest

from app import Settings, create_app
from email_data import EmailDataContext


class FakeChatClient:
    """Stands in for ChatClient; records calls instead of hitting OpenAI."""

    def __init__(self, configured=True, reply='Three emails need a reply today.', error=None):
        self.configured = configured
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, system_prompt, user_message):
        self.calls.append((system_prompt, user_message))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def enhanced_document():
    return {
        'emails': [
            {
                'id': 'e1',
                'subject': 'Renewal charged twice',
                'sender': 'jane@example.com',
                'analysis': {
                    'priority_score': 8.5,
                    'sentiment_category': 'frustrated',
                    'response_required': 'urgent',
                    'topic_category': 'membership',
                    'response_deadline': '2024-01-02',
                    'summary': 'Member was billed twice for renewal.',
                    'action_items': [
                        {'action': 'Call member back', 'priority': 'high'},
                        {'action': 'Send refund form', 'priority': 'low', 'type': 'admin',
                         'deadline': '2024-01-05'},
                    ],
                },
            },
            {
                'id': 'e2',
                'subject': 'Great event',
                'sender': 'bob@example.com',
                'analysis': {
                    'priority_score': 7.0,
                    'sentiment_category': 'positive',
                    'response_required': 'none',
                    'topic_category': 'events',
                    'summary': 'Thanks for the range day.',
                    'action_items': [{'action': 'Send thank-you note', 'priority': 'medium'}],
                },
            },
            {
                'id': 'e3',
                'subject': 'Address change',
                'sender': 'carol@example.com',
                'analysis': {
                    'priority_score': 5.0,
                    'sentiment_category': 'neutral',
                    'response_required': 'standard',
                    'topic_category': 'membership',
                    'action_items': [{'action': 'Escalate to records', 'priority': 'high'}],
                },
            },
            {
                'subject': 'Old complaint',
                'sender': 'dave@example.com',
                'analysis': {
                    'priority_score': 4.9,
                    'sentiment': {
                        'ai_analysis': {'overall_sentiment': 'negative'},
                        'classification': 'complaint',
                    },
                    'action_items': [{'action': 'Review history', 'priority': 'urgent'}],
                },
            },
            {
                'id': 'e5',
                'subject': 'Not analyzed',
                'sender': 'erin@example.com',
            },
        ],
        'summary': {
            'overview': {
                'total_analyzed': 4,
                'average_priority': 6.35,
                'requiring_response': 2,
                'critical_issues': 1,
            },
            'distributions': {
                'by_sentiment': {'frustrated': 1, 'positive': 1, 'neutral': 1},
                'by_priority': {'high': 2, 'medium': 1, 'low': 1},
                'by_topic': {'membership': 2, 'events': 1},
            },
            'sender_analysis': {
                'jane@example.com': {'email_count': 1, 'average_priority': 8.5},
            },
            'high_impact_items': [{'id': 'e1'}],
            'ai_insights': {
                'executive_summary': 'Billing issues dominate.',
                'key_points': ['Duplicate renewals'],
                'risks': [],
                'opportunities': [],
                'stakeholders': [],
            },
        },
        'quick_views': {
            'fires_to_put_out': [{'id': 'e1'}],
            'quick_wins': [{'id': 'e2'}, {'id': 'e3'}],
        },
    }


@pytest.fixture
def legacy_document():
    return {
        'emails': [
            {
                'id': 7,
                'subject': 'Legacy email',
                'sender': 'frank@example.com',
                'analysis': {
                    'priority_score': 6,
                    'sentiment': {'classification': 'neutral'},
                },
            },
        ],
        'summary': {
            'statistics': {
                'total_emails': 10,
                'analyzed': 9,
                'failed': 1,
                'avg_priority_score': 5.5,
                'emails_requiring_action': 3,
            },
            'distributions': {
                'sentiment': {'neutral': 9},
                'urgency': {'medium': 9},
                'topics': {'general': 9},
            },
            'high_priority_items': [{'id': 7}],
        },
    }


@pytest.fixture
def context(enhanced_document):
    return EmailDataContext.from_document(enhanced_document, source='primary')


@pytest.fixture
def settings(tmp_path):
    return Settings(openai_api_key='sk-test', static_dir=str(tmp_path / 'public'))


@pytest.fixture
def chat_client():
    return FakeChatClient()


@pytest.fixture
def app(settings, context, chat_client):
    app = create_app(settings, context, chat_client)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def build_client(settings, context):
    """Test client factory for overriding the chat client or the data."""
    def _build(chat_client=None, data=None, app_settings=None):
        app = create_app(
            app_settings or settings,
            data if data is not None else context,
            chat_client if chat_client is not None else FakeChatClient()
        )
        app.config['TESTING'] = True
        return app.test_client()
    return _build


@pytest.fixture
def fake_chat_client():
    return FakeChatClient


@pytest.fixture
def write_json(tmp_path):
    def _write(name, document):
        path = tmp_path / name
        path.write_text(json.dumps(document), encoding='utf-8')
        return str(path)
    return _write
