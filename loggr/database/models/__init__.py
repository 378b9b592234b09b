from .console_error import ConsoleError, CONSOLE_ERRORS_TABLE
from .ip_mapping import IpUserMapping, IP_MAPPING_TABLE
from .ignore_pattern import IgnorePattern, PatternType, IGNORE_PATTERNS_TABLE
from .option import Option, OPTIONS_TABLE

__all__ = [
    'ConsoleError', 'CONSOLE_ERRORS_TABLE',
    'IpUserMapping', 'IP_MAPPING_TABLE',
    'IgnorePattern', 'PatternType', 'IGNORE_PATTERNS_TABLE',
    'Option', 'OPTIONS_TABLE',
]
