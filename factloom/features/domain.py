"""Domain mastery: bulk confidence boosts for items sharing a tag."""

import logging
from typing import Optional

from ..protocols import KnowledgeStore
from ..validation import MAX_TAG_LENGTH, sanitize_number, sanitize_string

DEFAULT_BOOST = 0.05


class DomainBooster:
    """Raises confidence across every item tagged with a domain tag."""

    def __init__(self, store: KnowledgeStore, *, logger: Optional[logging.Logger] = None):
        self.store = store
        self.log = logger or logging.getLogger(__name__)

    def boost_domain(self, domain_tag: str, boost_factor: float = DEFAULT_BOOST) -> int:
        """Add ``boost_factor`` to every item tagged ``domain_tag`` with confidence < 1.0.

        A single bulk update; results are clamped to 1.0 by the store.

        Returns:
            Number of items changed.
        """
        domain_tag = sanitize_string(domain_tag, "domain_tag", MAX_TAG_LENGTH).strip()
        boost_factor = sanitize_number(boost_factor, "boost_factor")
        with self.store.transaction() as tx:
            count = tx.boost_tag(domain_tag, boost_factor)
        self.log.info(f"Boosted {count} item(s) in domain {domain_tag!r} by {boost_factor}")
        return count
