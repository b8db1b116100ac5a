"""Shared fixtures for calendar sync tests."""
import os

import boto3
import pytest
from moto import mock_aws

from storage.calendar_store import (
    CalendarStore,
    apartment_path,
    calendar_private_path,
    host_path,
)

TABLE_NAME = 'test-apartment-calendars'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so nothing reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_table():
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'pk', 'KeyType': 'HASH'},
                {'AttributeName': 'sk', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'pk', 'AttributeType': 'S'},
                {'AttributeName': 'sk', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield table


@pytest.fixture
def store(dynamodb_table):
    """Create CalendarStore instance with mock table."""
    return CalendarStore(TABLE_NAME)


@pytest.fixture
def sample_feed():
    """Feed with two bookings and one cancelled booking."""
    return '\r\n'.join([
        'BEGIN:VCALENDAR',
        'VERSION:2.0',
        'PRODID:-//Airbnb Inc//Hosting Calendar 1.0//EN',
        'BEGIN:VEVENT',
        'UID:booking-1@airbnb.com',
        'DTSTART;VALUE=DATE:20260610',
        'DTEND;VALUE=DATE:20260615',
        'SUMMARY:Reserved',
        'END:VEVENT',
        'BEGIN:VEVENT',
        'UID:booking-2@airbnb.com',
        'DTSTART;VALUE=DATE:20260703',
        'DTEND;VALUE=DATE:20260711',
        'SUMMARY:Reserved',
        'END:VEVENT',
        'BEGIN:VEVENT',
        'UID:booking-3@airbnb.com',
        'STATUS:CANCELLED',
        'DTSTART;VALUE=DATE:20260801',
        'DTEND;VALUE=DATE:20260805',
        'END:VEVENT',
        'END:VCALENDAR',
        ''
    ])


def add_host(store, host_id, **fields):
    """Write a host document."""
    store.set(host_path(host_id), dict({'name': host_id}, **fields))


def add_apartment(store, host_id, slug, manual_blocks=None, with_calendar=True):
    """Write an apartment document with an optional calendar."""
    data = {'slug': slug, 'name': slug.title()}
    if with_calendar:
        data['calendar'] = {
            'manualBlocks': manual_blocks or [],
            'importedBusyRanges': [],
            'conflicts': []
        }
    store.set(apartment_path(host_id, slug), data)


def add_calendar_private(store, host_id, slug, imports=None, export_token=None):
    """Write a private calendar record."""
    data = {
        'imports': imports or [],
        'conflictPolicy': 'strict-no-overwrite'
    }
    if export_token:
        data['exportToken'] = export_token
    store.set(calendar_private_path(host_id, slug), data)
