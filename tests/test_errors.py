from storycraft.errors import (
    AppError, GeminiServiceError, InsufficientCreditsError, ResourceNotFoundError, ServiceUnavailableError,
    ValidationError, get_error_response, is_operational_error, is_retryable_error,
)


def test_validation_error_message_and_metadata():
    error = ValidationError([{'field': 'amount', 'message': 'must be positive'},
                             {'field': 'operation', 'message': 'unknown'}])

    assert error.status_code == 400
    assert error.message == 'Validation failed: amount: must be positive, operation: unknown'
    assert error.metadata['errors'][0]['field'] == 'amount'


def test_insufficient_credits_is_payment_required():
    error = InsufficientCreditsError(required=5, available=2)

    body = get_error_response(error)

    assert body == {
        'success': False,
        'error': {
            'code': 'INSUFFICIENT_CREDITS',
            'message': 'Insufficient credits',
            'statusCode': 402,
            'metadata': {'required': 5, 'available': 2},
        },
    }


def test_gemini_service_error_carries_reason():
    cause = RuntimeError('boom')
    error = GeminiServiceError('model gone', 'MODEL_UNAVAILABLE', original_error=cause)

    assert error.code == 'MODEL_UNAVAILABLE'
    assert error.status_code == 502
    assert error.metadata == {'originalError': 'boom', 'reason': 'MODEL_UNAVAILABLE'}
    assert error.is_retryable is False


def test_none_metadata_is_dropped():
    error = ResourceNotFoundError('User')

    assert error.message == 'User not found'
    assert error.metadata == {'resource': 'User'}


def test_unknown_errors_are_hidden():
    body = get_error_response(KeyError('secret'))

    assert body['error'] == {'code': 'INTERNAL_ERROR', 'message': 'An unexpected error occurred',
                             'statusCode': 500}


def test_retryable_classification():
    assert is_retryable_error(ServiceUnavailableError('youtube'))
    assert not is_retryable_error(ValidationError([{'field': 'x', 'message': 'y'}]))
    assert is_retryable_error(ConnectionError())


def test_operational_flag():
    assert is_operational_error(AppError('x'))
    assert not is_operational_error(ValueError('x'))
