# slabmeter/lambda_handlers/dashboard_summary.py
"""
Lambda function returning the dashboard summary of the active billing cycle.
Triggered by API Gateway. Uses the same BillingService as the Flask API, so
both report identical numbers.
"""
import json
import logging

from botocore.exceptions import ClientError

from slabmeter.lib.billing_core.errors import BillingError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_service = None


def get_service():
    global _service
    if _service is None:
        from slabmeter import config
        from slabmeter.lib.billing_service import BillingService
        _service = BillingService(config.create_store(), default_target=config.DEFAULT_CONSUMPTION_TARGET)
    return _service


def lambda_handler(event, context):
    """
    Query parameters:
    - meter_id: optional, only return this meter's summary
    """
    logger.info("Received event: %s", json.dumps(event))

    params = (event or {}).get('queryStringParameters') or {}
    meter_id = params.get('meter_id')

    try:
        summary = get_service().dashboard_summary().to_dict()
    except BillingError as e:
        status = 404 if isinstance(e, NotFoundError) else 409 if isinstance(e, ConflictError) else 400
        return response(status, {'error': e.message})
    except ClientError as e:
        logger.exception("DynamoDB request failed")
        return response(500, {'error': str(e)})

    if meter_id:
        summary['meter_summaries'] = [m for m in summary['meter_summaries'] if m['meter_id'] == meter_id]
        if not summary['meter_summaries']:
            return response(404, {'error': f'Meter {meter_id} not found'})

    return response(200, summary)


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET,OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type'
        },
        'body': json.dumps(body)
    }
