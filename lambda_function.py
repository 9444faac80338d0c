"""AWS Lambda handler for the shared police events cache."""
import base64
import json
import logging
import os
import time
from typing import Any, Dict

from log_setup import setup_logging
from pool.shared_pool import SharedPool, generate_contributor_id

# Lives as long as the warm container; a cold start is an implicit reset
shared_pool = SharedPool()


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body, ensure_ascii=False)
    }


def _request_method(event: Dict[str, Any]) -> str:
    """HTTP method from a REST (v1) or HTTP API (v2) proxy event."""
    method = event.get('httpMethod')
    if not method:
        method = event.get('requestContext', {}).get('http', {}).get('method', '')
    return method.upper()


def _source_ip(event: Dict[str, Any]) -> str:
    context = event.get('requestContext') or {}
    return (
        (context.get('identity') or {}).get('sourceIp')
        or (context.get('http') or {}).get('sourceIp')
    )


def handle_get(event: Dict[str, Any]) -> Dict[str, Any]:
    params = event.get('queryStringParameters') or {}
    return _response(200, shared_pool.read(since=params.get('since')))


def handle_post(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        body = base64.b64decode(body).decode('utf-8')

    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")

    contributor_id = generate_contributor_id(event.get('headers'), _source_ip(event))
    result = shared_pool.write(payload.get('events'), contributor_id)
    return _response(200, result.to_dict())


def handle_delete(event: Dict[str, Any]) -> Dict[str, Any]:
    shared_pool.reset()
    return _response(200, {'success': True, 'message': 'Shared cache cleared'})


HANDLERS = {
    'GET': (handle_get, 'Failed to retrieve cache'),
    'POST': (handle_post, 'Failed to update cache'),
    'DELETE': (handle_delete, 'Failed to clear cache'),
}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for the /shared-cache resource.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    method = _request_method(event)
    logger.info(f"Shared cache request started: {method}")

    if method not in HANDLERS:
        logger.warning(f"Unsupported method: {method}")
        return _response(405, {'error': f"Method {method or 'UNKNOWN'} not allowed"})

    handler, error_message = HANDLERS[method]
    try:
        response = handler(event)
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Shared cache {method} failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {'error': error_message})

    duration = time.time() - start_time
    logger.info(
        f"Shared cache request completed: {method}",
        extra={'duration_seconds': round(duration, 2)}
    )
    return response
