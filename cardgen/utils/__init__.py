"""Utility subpackage for the flashcard generation service"""

from .logger import (
	get_logger,
	log_request,
	log_error,
	log_llm_call,
	log_generation,
	log_circuit_transition,
	log_duplicate_check,
	log_rate_limited,
	set_request_context,
	get_request_context,
)

__all__ = [
	'get_logger',
	'log_request',
	'log_error',
	'log_llm_call',
	'log_generation',
	'log_circuit_transition',
	'log_duplicate_check',
	'log_rate_limited',
	'set_request_context',
	'get_request_context',
]
