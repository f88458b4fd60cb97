"""
=============================================================================
DYNAMODB STORE - Amazon DynamoDB backend for the billing engine
=============================================================================
All records live in ONE table with a generic key:

    pk (String) - Partition Key - the record kind ("CYCLE", "READING", ...)
    sk (String) - Sort Key      - the record id

Item layout:
    pk="METER"    sk=<meter_id>      name, meter_type, flags
    pk="CYCLE"    sk=<cycle_id>      start_date, end_date, status, notes,
                                     reading_count
    pk="CYCLE"    sk="#ACTIVE"       cycle_id of the active cycle
    pk="READING"  sk=<reading_id>    meter_id, cycle_id, timestamp, value,
                                     units_consumed_since_previous, ...
    pk="SLAB"     sk=<config_id>     config_name, tiers, is_currently_active
    pk="SLAB"     sk="#ACTIVE"       config_id of the active config
    pk="SETTING"  sk="user_settings" consumption_target

Why the "#ACTIVE" items?
------------------------
"At most one active cycle" cannot be checked with a query and then written:
two requests could both see "no active cycle" and both insert one. Instead
every change of the active cycle is a TransactWriteItems call that also
writes the "#ACTIVE" item with a condition:
- start:  put "#ACTIVE" only if it does not exist yet
- close:  move "#ACTIVE" to the new cycle only if it still names the old one
DynamoDB rejects the whole transaction if a condition fails, so readers
never observe zero or two active cycles.

Cycles count their readings (reading_count) in the same transaction that
writes or deletes a reading, so deleting a cycle can be conditional on
reading_count = 0.
=============================================================================
"""

import logging
import os
from decimal import Decimal
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from slabmeter.lib.billing_core.errors import ConflictError, NotFoundError
from slabmeter.lib.billing_core.models import (
    ACTIVE,
    CLOSED,
    BillingCycle,
    Meter,
    Reading,
    Settings,
    SlabRateConfig,
    format_datetime,
)
from slabmeter.lib.store import BillingStore

logger = logging.getLogger(__name__)

ACTIVE_SK = "#ACTIVE"
CANCELLED = "TransactionCanceledException"
CONDITION_FAILED = "ConditionalCheckFailedException"

_serializer = TypeSerializer()


def to_dynamo(value):
    """DynamoDB requires Decimal for numbers, not float."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class DynamoDBStore(BillingStore):
    """
    Usage:
        store = DynamoDBStore()
        store.create_table_if_not_exists()
        BillingService(store).cycles.start_cycle("2025-11-01")
    """

    backend_name = "dynamodb"

    def __init__(self, table_name: str = None, region: str = None):
        self.table_name = table_name or os.getenv('DYNAMODB_TABLE_NAME', 'SlabMeter')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')
        session_token = os.getenv('AWS_SESSION_TOKEN')

        # Resource: Table objects for simple reads and writes
        self.dynamodb = boto3.resource(
            'dynamodb',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None
        )
        # Client: describe_table and transact_write_items
        self.client = boto3.client(
            'dynamodb',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            aws_session_token=session_token if session_token else None
        )
        self.table = self.dynamodb.Table(self.table_name)

    def create_table_if_not_exists(self) -> bool:
        try:
            self.client.describe_table(TableName=self.table_name)
            logger.info("DynamoDB table '%s' exists", self.table_name)
            return True
        except ClientError as e:
            if _error_code(e) != 'ResourceNotFoundException':
                logger.error("Error checking table: %s", e)
                return False
        try:
            table = self.dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=[
                    {'AttributeName': 'pk', 'KeyType': 'HASH'},
                    {'AttributeName': 'sk', 'KeyType': 'RANGE'},
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'pk', 'AttributeType': 'S'},
                    {'AttributeName': 'sk', 'AttributeType': 'S'},
                ],
                BillingMode='PAY_PER_REQUEST'
            )
            table.wait_until_exists()
            self.table = table
            logger.info("Created DynamoDB table '%s'", self.table_name)
            return True
        except ClientError as create_error:
            logger.error("Failed to create table: %s", create_error)
            return False

    # ---- low-level helpers -------------------------------------------------

    def _typed(self, item: Dict) -> Dict:
        return {k: _serializer.serialize(v) for k, v in to_dynamo(item).items()}

    def _key(self, pk: str, sk: str) -> Dict:
        return self._typed({'pk': pk, 'sk': sk})

    def _transact(self, items: List[Dict]):
        for item in items:
            op = next(iter(item.values()))
            op['TableName'] = self.table_name
        self.client.transact_write_items(TransactItems=items)

    def _get(self, pk: str, sk: str) -> Optional[Dict]:
        response = self.table.get_item(Key={'pk': pk, 'sk': sk})
        item = response.get('Item')
        return from_dynamo(item) if item else None

    def _query_all(self, pk: str, filter_expression=None) -> List[Dict]:
        kwargs = {'KeyConditionExpression': Key('pk').eq(pk)}
        if filter_expression is not None:
            kwargs['FilterExpression'] = filter_expression
        response = self.table.query(**kwargs)
        items = response.get('Items', [])
        # DynamoDB returns max 1MB of data per query
        while 'LastEvaluatedKey' in response:
            response = self.table.query(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return [from_dynamo(i) for i in items if not i['sk'].startswith('#')]

    # ---- meters ------------------------------------------------------------

    def put_meter(self, meter: Meter) -> Meter:
        item = meter.to_dict()
        item.update({'pk': 'METER', 'sk': meter.meter_id})
        self.table.put_item(Item=to_dynamo(item))
        return meter

    def get_meter(self, meter_id: str) -> Optional[Meter]:
        item = self._get('METER', meter_id)
        return Meter.from_dict(item) if item else None

    def list_meters(self) -> List[Meter]:
        return sorted((Meter.from_dict(i) for i in self._query_all('METER')), key=lambda m: m.name)

    # ---- billing cycles ----------------------------------------------------

    @staticmethod
    def _cycle_item(cycle: BillingCycle) -> Dict:
        item = {k: v for k, v in cycle.to_dict().items() if v is not None}
        item.update({'pk': 'CYCLE', 'sk': cycle.cycle_id})
        return item

    def get_cycle(self, cycle_id: str) -> Optional[BillingCycle]:
        item = self._get('CYCLE', cycle_id)
        return BillingCycle.from_dict(item) if item else None

    def list_cycles(self) -> List[BillingCycle]:
        cycles = [BillingCycle.from_dict(i) for i in self._query_all('CYCLE')]
        return sorted(cycles, key=lambda c: c.start_date, reverse=True)

    def get_active_cycle(self) -> Optional[BillingCycle]:
        pointer = self._get('CYCLE', ACTIVE_SK)
        if not pointer:
            return None
        return self.get_cycle(pointer['cycle_id'])

    def insert_active_cycle(self, cycle: BillingCycle) -> BillingCycle:
        item = self._cycle_item(cycle)
        item['reading_count'] = 0
        try:
            self._transact([
                {'Put': {
                    'Item': self._typed({'pk': 'CYCLE', 'sk': ACTIVE_SK, 'cycle_id': cycle.cycle_id}),
                    'ConditionExpression': 'attribute_not_exists(pk)',
                }},
                {'Put': {
                    'Item': self._typed(item),
                    'ConditionExpression': 'attribute_not_exists(pk)',
                }},
            ])
        except ClientError as e:
            if _error_code(e) == CANCELLED:
                raise ConflictError("An active billing cycle already exists. Please close it first.")
            raise
        return cycle

    def close_and_open(self, closed: BillingCycle, opened: BillingCycle) -> None:
        opened_item = self._cycle_item(opened)
        opened_item['reading_count'] = 0
        try:
            self._transact([
                {'Update': {
                    'Key': self._key('CYCLE', closed.cycle_id),
                    'UpdateExpression': 'SET end_date = :end, government_collection_date = :gcd, '
                                        '#status = :closed, notes = :notes',
                    'ConditionExpression': '#status = :active',
                    'ExpressionAttributeNames': {'#status': 'status'},
                    'ExpressionAttributeValues': self._typed({
                        ':end': format_datetime(closed.end_date),
                        ':gcd': format_datetime(closed.government_collection_date),
                        ':closed': CLOSED,
                        ':active': ACTIVE,
                        ':notes': closed.notes,
                    }),
                }},
                {'Put': {
                    'Item': self._typed(opened_item),
                    'ConditionExpression': 'attribute_not_exists(pk)',
                }},
                {'Update': {
                    'Key': self._key('CYCLE', ACTIVE_SK),
                    'UpdateExpression': 'SET cycle_id = :new',
                    'ConditionExpression': 'cycle_id = :old',
                    'ExpressionAttributeValues': self._typed({':new': opened.cycle_id, ':old': closed.cycle_id}),
                }},
            ])
        except ClientError as e:
            if _error_code(e) == CANCELLED:
                raise NotFoundError("No active billing cycle found.")
            raise

    def update_cycle_notes(self, cycle_id: str, notes: str) -> BillingCycle:
        try:
            response = self.table.update_item(
                Key={'pk': 'CYCLE', 'sk': cycle_id},
                UpdateExpression='SET notes = :notes',
                ConditionExpression=Attr('pk').exists(),
                ExpressionAttributeValues={':notes': notes},
                ReturnValues='ALL_NEW',
            )
        except ClientError as e:
            if _error_code(e) == CONDITION_FAILED:
                raise NotFoundError("Billing cycle not found.")
            raise
        return BillingCycle.from_dict(from_dynamo(response['Attributes']))

    def delete_cycle(self, cycle_id: str) -> None:
        item = self._get('CYCLE', cycle_id)
        if item is None:
            raise NotFoundError("Billing cycle not found.")
        count = int(item.get('reading_count', 0))
        if count > 0:
            raise ConflictError(f"Cannot delete cycle with {count} readings.")

        items = [{'Delete': {
            'Key': self._key('CYCLE', cycle_id),
            'ConditionExpression': 'attribute_not_exists(reading_count) OR reading_count = :zero',
            'ExpressionAttributeValues': self._typed({':zero': 0}),
        }}]
        if item.get('status') == ACTIVE:
            items.append({'Delete': {
                'Key': self._key('CYCLE', ACTIVE_SK),
                'ConditionExpression': 'cycle_id = :id',
                'ExpressionAttributeValues': self._typed({':id': cycle_id}),
            }})
        try:
            self._transact(items)
        except ClientError as e:
            if _error_code(e) == CANCELLED:
                raise ConflictError(f"Cannot delete cycle with {self.count_readings(cycle_id)} readings.")
            raise

    # ---- readings ----------------------------------------------------------

    def get_reading(self, reading_id: str) -> Optional[Reading]:
        item = self._get('READING', reading_id)
        return Reading.from_dict(item) if item else None

    def list_readings(self, meter_id: Optional[str] = None, cycle_id: Optional[str] = None) -> List[Reading]:
        condition = None
        if meter_id is not None:
            condition = Attr('meter_id').eq(meter_id)
        if cycle_id is not None:
            by_cycle = Attr('cycle_id').eq(cycle_id)
            condition = by_cycle if condition is None else condition & by_cycle
        readings = [Reading.from_dict(i) for i in self._query_all('READING', condition)]
        return sorted(readings, key=lambda r: (r.timestamp, r.reading_id))

    def insert_reading(self, reading: Reading) -> Reading:
        item = reading.to_dict()
        item.update({'pk': 'READING', 'sk': reading.reading_id})
        try:
            self._transact([
                {'Put': {'Item': self._typed(item)}},
                {'Update': {
                    'Key': self._key('CYCLE', reading.cycle_id),
                    'UpdateExpression': 'ADD reading_count :one',
                    'ConditionExpression': 'attribute_exists(pk)',
                    'ExpressionAttributeValues': self._typed({':one': 1}),
                }},
            ])
        except ClientError as e:
            if _error_code(e) == CANCELLED:
                raise NotFoundError("Billing cycle not found.")
            raise
        return reading

    def update_reading_deltas(self, readings: List[Reading]) -> None:
        for r in readings:
            self.table.update_item(
                Key={'pk': 'READING', 'sk': r.reading_id},
                UpdateExpression='SET units_consumed_since_previous = :delta',
                ExpressionAttributeValues={':delta': to_dynamo(float(r.units_consumed_since_previous))},
            )

    def delete_reading(self, reading: Reading) -> None:
        try:
            self._transact([
                {'Delete': {
                    'Key': self._key('READING', reading.reading_id),
                    'ConditionExpression': 'attribute_exists(pk)',
                }},
                {'Update': {
                    'Key': self._key('CYCLE', reading.cycle_id),
                    'UpdateExpression': 'ADD reading_count :minus_one',
                    'ExpressionAttributeValues': self._typed({':minus_one': -1}),
                }},
            ])
        except ClientError as e:
            if _error_code(e) == CANCELLED:
                raise NotFoundError("Reading not found.")
            raise

    def count_readings(self, cycle_id: str) -> int:
        item = self._get('CYCLE', cycle_id)
        return int(item.get('reading_count', 0)) if item else 0

    # ---- slab rate configs -------------------------------------------------

    def put_config(self, config: SlabRateConfig) -> SlabRateConfig:
        config.is_currently_active = False
        item = config.to_dict()
        item.update({'pk': 'SLAB', 'sk': config.config_id})
        self.table.put_item(Item=to_dynamo(item))
        return config

    def get_config(self, config_id: str) -> Optional[SlabRateConfig]:
        item = self._get('SLAB', config_id)
        return SlabRateConfig.from_dict(item) if item else None

    def list_configs(self) -> List[SlabRateConfig]:
        configs = [SlabRateConfig.from_dict(i) for i in self._query_all('SLAB')]
        return sorted(configs, key=lambda c: c.effective_date, reverse=True)

    def get_active_config(self) -> Optional[SlabRateConfig]:
        pointer = self._get('SLAB', ACTIVE_SK)
        if not pointer:
            return None
        return self.get_config(pointer['config_id'])

    def activate_config(self, config_id: str) -> SlabRateConfig:
        pointer = self._get('SLAB', ACTIVE_SK)
        old_id = pointer['config_id'] if pointer else None
        items = [{'Update': {
            'Key': self._key('SLAB', config_id),
            'UpdateExpression': 'SET is_currently_active = :yes',
            'ConditionExpression': 'attribute_exists(pk)',
            'ExpressionAttributeValues': self._typed({':yes': True}),
        }}]
        if old_id and old_id != config_id:
            items.append({'Update': {
                'Key': self._key('SLAB', old_id),
                'UpdateExpression': 'SET is_currently_active = :no',
                'ExpressionAttributeValues': self._typed({':no': False}),
            }})
        if old_id:
            pointer_condition = {
                'ConditionExpression': 'config_id = :old',
                'ExpressionAttributeValues': self._typed({':old': old_id}),
            }
        else:
            pointer_condition = {'ConditionExpression': 'attribute_not_exists(pk)'}
        if old_id != config_id:
            items.append({'Put': dict(
                Item=self._typed({'pk': 'SLAB', 'sk': ACTIVE_SK, 'config_id': config_id}),
                **pointer_condition,
            )})
        try:
            self._transact(items)
        except ClientError as e:
            if _error_code(e) != CANCELLED:
                raise
            if self.get_config(config_id) is None:
                raise NotFoundError("Slab rate configuration not found.")
            raise ConflictError("The active slab rate configuration changed concurrently. Please retry.")
        return self.get_config(config_id)

    # ---- settings ----------------------------------------------------------

    def get_settings(self) -> Optional[Settings]:
        item = self._get('SETTING', 'user_settings')
        if not item:
            return None
        return Settings(consumption_target=float(item['consumption_target']))

    def put_settings(self, settings: Settings) -> Settings:
        self.table.put_item(Item=to_dynamo({
            'pk': 'SETTING',
            'sk': 'user_settings',
            'consumption_target': float(settings.consumption_target),
        }))
        return settings
