"""Resolution of server capabilities from the version banner.

The banner (``SELECT @@VERSION``) is inspected exactly once per session, here.
Everything else branches on the resulting `Capabilities`.
"""

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HOSTED_BANNER_PREFIX = 'Microsoft SQL Azure'

# STRING_SPLIT needs compatibility level 130 (SQL Server 2016)
STRING_SPLIT_COMPATIBILITY_LEVEL = 130

_PRODUCT_YEAR = re.compile(r'^Microsoft SQL Server (\d{4})\b')
_PRODUCT_VERSION = re.compile(r'\b(\d+)\.\d+\.\d+(?:\.\d+)?\b')


@dataclass(frozen=True)
class Capabilities:
    """Feature switches of the target server.

    Attributes:
        is_hosted_edition (bool): The server is the hosted (Azure SQL Database) edition.
        supports_default_language (bool): ``DEFAULT_LANGUAGE`` may be set on users and logins.
        supports_native_string_split (bool): ``STRING_SPLIT`` is available in the current database.
        supports_cross_database_qualified_names (bool): Catalog views may be qualified with a
            database name, e.g. ``[db].[sys].[database_principals]``.
        supports_string_agg (bool): ``STRING_AGG`` is available (SQL Server 2017 and later).
        major_version (int | None): Major product version reported in the banner.
    """

    is_hosted_edition: bool = False
    supports_default_language: bool = True
    supports_native_string_split: bool = True
    supports_cross_database_qualified_names: bool = True
    supports_string_agg: bool = True
    major_version: int | None = None


def resolve(version: str, compatibility_level: int | None = None) -> Capabilities:
    """Resolve capabilities from a version banner.

    Args:
        version (str): Output of ``SELECT @@VERSION``.
        compatibility_level (int | None): Compatibility level of the current
            database, or None when unknown (treated as modern).

    Returns:
        Capabilities: The resolved feature switches.

    Example:
        >>> resolve('Microsoft SQL Azure (RTM) - 12.0.2000.8').is_hosted_edition
        True
    """
    banner = version.strip()
    is_hosted = banner.startswith(HOSTED_BANNER_PREFIX)

    version_match = _PRODUCT_VERSION.search(banner)
    major_version = int(version_match.group(1)) if version_match else None

    if is_hosted:
        supports_string_agg = True
    else:
        year_match = _PRODUCT_YEAR.match(banner)
        # Unrecognised banners are assumed to be recent releases
        supports_string_agg = int(year_match.group(1)) >= 2017 if year_match else True

    supports_string_split = compatibility_level is None or compatibility_level >= STRING_SPLIT_COMPATIBILITY_LEVEL

    capabilities = Capabilities(
        is_hosted_edition=is_hosted,
        supports_default_language=not is_hosted,
        supports_native_string_split=supports_string_split,
        supports_cross_database_qualified_names=not is_hosted,
        supports_string_agg=supports_string_agg,
        major_version=major_version,
    )
    logger.debug('Resolved capabilities %s from banner %r', capabilities, banner.splitlines()[0] if banner else '')
    return capabilities
