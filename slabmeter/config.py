"""
=============================================================================
CONFIGURATION - environment variables (optionally from a .env file)
=============================================================================
Variables:
    USE_DYNAMODB                true/false, default false (local store)
    DYNAMODB_TABLE_NAME         default SlabMeter
    AWS_REGION                  default us-east-1
    LOCAL_DATA_FILE             JSON file for the local store; empty = memory
    DEFAULT_CONSUMPTION_TARGET  units, default 500
    LOG_LEVEL                   default INFO
=============================================================================
"""

import logging
import math
import os

from dotenv import load_dotenv

from slabmeter.lib.billing_core import models

# Must run before any os.getenv below
load_dotenv()

USE_DYNAMODB = os.getenv('USE_DYNAMODB', 'false').lower() == 'true'
DYNAMODB_TABLE_NAME = os.getenv('DYNAMODB_TABLE_NAME', 'SlabMeter')
AWS_REGION = os.getenv('AWS_REGION', 'us-east-1')
LOCAL_DATA_FILE = os.getenv('LOCAL_DATA_FILE', 'slabmeter/data/store.json')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

logger = logging.getLogger(__name__)


def parse_consumption_target(raw):
    """A positive finite number, else the built-in 500 unit target."""
    try:
        target = float(raw)
    except (TypeError, ValueError):
        target = None
    if target is None or not math.isfinite(target) or target <= 0:
        logger.warning("Ignoring DEFAULT_CONSUMPTION_TARGET=%r, using %s", raw, models.DEFAULT_CONSUMPTION_TARGET)
        return models.DEFAULT_CONSUMPTION_TARGET
    return target


DEFAULT_CONSUMPTION_TARGET = parse_consumption_target(os.getenv('DEFAULT_CONSUMPTION_TARGET', '500'))


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_store():
    """
    DynamoDB store if USE_DYNAMODB is set, otherwise the local store.

    Falls back to the local store when DynamoDB cannot be reached.
    """
    if USE_DYNAMODB:
        from slabmeter.lib.dynamodb_service import DynamoDBStore
        store = DynamoDBStore(table_name=DYNAMODB_TABLE_NAME, region=AWS_REGION)
        if store.create_table_if_not_exists():
            logger.info("DynamoDB storage enabled (table %s)", DYNAMODB_TABLE_NAME)
            return store
        logger.warning("DynamoDB initialization failed. Using local storage.")

    from slabmeter.lib.local_store import LocalStore
    return LocalStore(LOCAL_DATA_FILE or None)
