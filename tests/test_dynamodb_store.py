from decimal import Decimal

import pytest
from botocore.stub import ANY, Stubber

from slabmeter.lib.billing_core.errors import ConflictError, NotFoundError
from slabmeter.lib.billing_core.models import BillingCycle, CLOSED, Reading
from slabmeter.lib.dynamodb_service import DynamoDBStore, from_dynamo, to_dynamo

from conftest import utc


@pytest.fixture
def store():
    return DynamoDBStore(table_name="test", region="us-east-1")


def cycle_item(status="active", reading_count=0):
    return {"Item": {
        "pk": {"S": "CYCLE"},
        "sk": {"S": "c1"},
        "cycle_id": {"S": "c1"},
        "start_date": {"S": "2025-11-01T00:00:00+00:00"},
        "status": {"S": status},
        "notes": {"S": ""},
        "reading_count": {"N": str(reading_count)},
    }}


def test_number_conversion():
    assert to_dynamo({"a": 1.5, "b": [2.25], "c": True, "d": None}) == {
        "a": Decimal("1.5"), "b": [Decimal("2.25")], "c": True, "d": None,
    }
    assert from_dynamo({"a": Decimal("1.5"), "b": [Decimal("3")]}) == {"a": 1.5, "b": [3.0]}


def test_start_cycle_writes_active_marker_conditionally(store):
    cycle = BillingCycle(start_date=utc(2025, 11, 1), cycle_id="c1")
    expected = {"TransactItems": [
        {"Put": {
            "TableName": "test",
            "Item": {"pk": {"S": "CYCLE"}, "sk": {"S": "#ACTIVE"}, "cycle_id": {"S": "c1"}},
            "ConditionExpression": "attribute_not_exists(pk)",
        }},
        {"Put": {
            "TableName": "test",
            "Item": ANY,
            "ConditionExpression": "attribute_not_exists(pk)",
        }},
    ]}
    with Stubber(store.client) as stub:
        stub.add_response("transact_write_items", {}, expected)
        assert store.insert_active_cycle(cycle) is cycle
        stub.assert_no_pending_responses()


def test_start_cycle_conflict(store):
    with Stubber(store.client) as stub:
        stub.add_client_error("transact_write_items", service_error_code="TransactionCanceledException",
                              service_message="Transaction cancelled [ConditionalCheckFailed, None]")
        with pytest.raises(ConflictError):
            store.insert_active_cycle(BillingCycle(start_date=utc(2025, 11, 1)))


def test_close_when_cycle_no_longer_active(store):
    closed = BillingCycle(start_date=utc(2025, 11, 1), end_date=utc(2026, 1, 3),
                          government_collection_date=utc(2026, 1, 3), status=CLOSED, cycle_id="c1")
    opened = BillingCycle(start_date=utc(2026, 1, 3), cycle_id="c2")
    with Stubber(store.client) as stub:
        stub.add_client_error("transact_write_items", service_error_code="TransactionCanceledException")
        with pytest.raises(NotFoundError):
            store.close_and_open(closed, opened)


def test_delete_cycle_with_readings(store):
    with Stubber(store.dynamodb.meta.client) as stub:
        stub.add_response("get_item", cycle_item(reading_count=3))
        with pytest.raises(ConflictError) as exc:
            store.delete_cycle("c1")
    assert exc.value.message == "Cannot delete cycle with 3 readings."


def test_delete_active_cycle_removes_marker(store):
    expected = {"TransactItems": [
        {"Delete": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "c1"}},
            "ConditionExpression": "attribute_not_exists(reading_count) OR reading_count = :zero",
            "ExpressionAttributeValues": {":zero": {"N": "0"}},
        }},
        {"Delete": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "#ACTIVE"}},
            "ConditionExpression": "cycle_id = :id",
            "ExpressionAttributeValues": {":id": {"S": "c1"}},
        }},
    ]}
    with Stubber(store.dynamodb.meta.client) as resource_stub, Stubber(store.client) as client_stub:
        resource_stub.add_response("get_item", cycle_item())
        client_stub.add_response("transact_write_items", {}, expected)
        store.delete_cycle("c1")
        client_stub.assert_no_pending_responses()


def test_delete_unknown_cycle(store):
    with Stubber(store.dynamodb.meta.client) as stub:
        stub.add_response("get_item", {})
        with pytest.raises(NotFoundError):
            store.delete_cycle("missing")


def test_get_active_cycle_follows_marker(store):
    with Stubber(store.dynamodb.meta.client) as stub:
        stub.add_response("get_item", {"Item": {
            "pk": {"S": "CYCLE"}, "sk": {"S": "#ACTIVE"}, "cycle_id": {"S": "c1"},
        }})
        stub.add_response("get_item", cycle_item())
        cycle = store.get_active_cycle()
    assert cycle.cycle_id == "c1"
    assert cycle.start_date == utc(2025, 11, 1)
    assert cycle.is_active


def test_close_and_open_is_one_conditional_transaction(store):
    closed = BillingCycle(start_date=utc(2025, 11, 1), end_date=utc(2026, 1, 3),
                          government_collection_date=utc(2026, 1, 3), status=CLOSED,
                          notes="paid", cycle_id="c1")
    opened = BillingCycle(start_date=utc(2026, 1, 3), notes="New cycle started automatically.", cycle_id="c2")
    expected = {"TransactItems": [
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "c1"}},
            "UpdateExpression": "SET end_date = :end, government_collection_date = :gcd, "
                                "#status = :closed, notes = :notes",
            "ConditionExpression": "#status = :active",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {
                ":end": {"S": "2026-01-03T00:00:00+00:00"},
                ":gcd": {"S": "2026-01-03T00:00:00+00:00"},
                ":closed": {"S": "closed"},
                ":active": {"S": "active"},
                ":notes": {"S": "paid"},
            },
        }},
        {"Put": {
            "TableName": "test",
            "Item": ANY,
            "ConditionExpression": "attribute_not_exists(pk)",
        }},
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "#ACTIVE"}},
            "UpdateExpression": "SET cycle_id = :new",
            "ConditionExpression": "cycle_id = :old",
            "ExpressionAttributeValues": {":new": {"S": "c2"}, ":old": {"S": "c1"}},
        }},
    ]}
    with Stubber(store.client) as stub:
        stub.add_response("transact_write_items", {}, expected)
        store.close_and_open(closed, opened)
        stub.assert_no_pending_responses()


def config_item(config_id, active):
    return {"Item": {
        "pk": {"S": "SLAB"},
        "sk": {"S": config_id},
        "config_id": {"S": config_id},
        "config_name": {"S": "Winter"},
        "effective_date": {"S": "2026-04-01T00:00:00+00:00"},
        "is_currently_active": {"BOOL": active},
        "slabs_up_to_500": {"L": [{"M": {
            "from_unit": {"N": "1"}, "to_unit": {"NULL": True}, "rate": {"N": "1.5"},
        }}]},
        "slabs_above_500": {"L": []},
    }}


def test_activate_config_moves_pointer_and_deactivates_old(store):
    expected = {"TransactItems": [
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "SLAB"}, "sk": {"S": "cfg-new"}},
            "UpdateExpression": "SET is_currently_active = :yes",
            "ConditionExpression": "attribute_exists(pk)",
            "ExpressionAttributeValues": {":yes": {"BOOL": True}},
        }},
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "SLAB"}, "sk": {"S": "cfg-old"}},
            "UpdateExpression": "SET is_currently_active = :no",
            "ExpressionAttributeValues": {":no": {"BOOL": False}},
        }},
        {"Put": {
            "TableName": "test",
            "Item": {"pk": {"S": "SLAB"}, "sk": {"S": "#ACTIVE"}, "config_id": {"S": "cfg-new"}},
            "ConditionExpression": "config_id = :old",
            "ExpressionAttributeValues": {":old": {"S": "cfg-old"}},
        }},
    ]}
    with Stubber(store.dynamodb.meta.client) as resource_stub, Stubber(store.client) as client_stub:
        resource_stub.add_response("get_item", {"Item": {
            "pk": {"S": "SLAB"}, "sk": {"S": "#ACTIVE"}, "config_id": {"S": "cfg-old"},
        }})
        client_stub.add_response("transact_write_items", {}, expected)
        resource_stub.add_response("get_item", config_item("cfg-new", True))
        config = store.activate_config("cfg-new")
        client_stub.assert_no_pending_responses()
        resource_stub.assert_no_pending_responses()
    assert config.config_id == "cfg-new"
    assert config.is_currently_active is True
    assert config.slabs_up_to_500[0].to_unit is None


def test_first_activation_creates_pointer(store):
    expected = {"TransactItems": [
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "SLAB"}, "sk": {"S": "cfg-new"}},
            "UpdateExpression": "SET is_currently_active = :yes",
            "ConditionExpression": "attribute_exists(pk)",
            "ExpressionAttributeValues": {":yes": {"BOOL": True}},
        }},
        {"Put": {
            "TableName": "test",
            "Item": {"pk": {"S": "SLAB"}, "sk": {"S": "#ACTIVE"}, "config_id": {"S": "cfg-new"}},
            "ConditionExpression": "attribute_not_exists(pk)",
        }},
    ]}
    with Stubber(store.dynamodb.meta.client) as resource_stub, Stubber(store.client) as client_stub:
        resource_stub.add_response("get_item", {})
        client_stub.add_response("transact_write_items", {}, expected)
        resource_stub.add_response("get_item", config_item("cfg-new", True))
        assert store.activate_config("cfg-new").is_currently_active is True
        client_stub.assert_no_pending_responses()


def test_activate_unknown_config(store):
    with Stubber(store.dynamodb.meta.client) as resource_stub, Stubber(store.client) as client_stub:
        resource_stub.add_response("get_item", {})
        client_stub.add_client_error("transact_write_items", service_error_code="TransactionCanceledException")
        resource_stub.add_response("get_item", {})
        with pytest.raises(NotFoundError):
            store.activate_config("missing")


def test_activate_config_raced(store):
    with Stubber(store.dynamodb.meta.client) as resource_stub, Stubber(store.client) as client_stub:
        resource_stub.add_response("get_item", {})
        client_stub.add_client_error("transact_write_items", service_error_code="TransactionCanceledException")
        resource_stub.add_response("get_item", config_item("cfg-new", False))
        with pytest.raises(ConflictError):
            store.activate_config("cfg-new")


def test_insert_reading_counts_against_cycle(store):
    reading = Reading("main", "c1", utc(2025, 11, 2), 1000.0, units_consumed_since_previous=1000.0,
                      reading_id="r1")
    expected = {"TransactItems": [
        {"Put": {"TableName": "test", "Item": ANY}},
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "c1"}},
            "UpdateExpression": "ADD reading_count :one",
            "ConditionExpression": "attribute_exists(pk)",
            "ExpressionAttributeValues": {":one": {"N": "1"}},
        }},
    ]}
    with Stubber(store.client) as stub:
        stub.add_response("transact_write_items", {}, expected)
        assert store.insert_reading(reading) is reading
        stub.assert_no_pending_responses()


def test_insert_reading_into_missing_cycle(store):
    reading = Reading("main", "gone", utc(2025, 11, 2), 1000.0)
    with Stubber(store.client) as stub:
        stub.add_client_error("transact_write_items", service_error_code="TransactionCanceledException")
        with pytest.raises(NotFoundError):
            store.insert_reading(reading)


def test_delete_reading_decrements_cycle_count(store):
    reading = Reading("main", "c1", utc(2025, 11, 2), 1000.0, reading_id="r1")
    expected = {"TransactItems": [
        {"Delete": {
            "TableName": "test",
            "Key": {"pk": {"S": "READING"}, "sk": {"S": "r1"}},
            "ConditionExpression": "attribute_exists(pk)",
        }},
        {"Update": {
            "TableName": "test",
            "Key": {"pk": {"S": "CYCLE"}, "sk": {"S": "c1"}},
            "UpdateExpression": "ADD reading_count :minus_one",
            "ExpressionAttributeValues": {":minus_one": {"N": "-1"}},
        }},
    ]}
    with Stubber(store.client) as stub:
        stub.add_response("transact_write_items", {}, expected)
        store.delete_reading(reading)
        stub.assert_no_pending_responses()
