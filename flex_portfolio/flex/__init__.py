"""IBKR Flex statement fetching and parsing."""

from .client import FlexStatementClient, parse_send_request_body
from .parser import parse_flex_statement, parse_flex_timestamp
from .records import ParsedStatement

__all__ = [
    "FlexStatementClient",
    "ParsedStatement",
    "parse_flex_statement",
    "parse_flex_timestamp",
    "parse_send_request_body",
]
