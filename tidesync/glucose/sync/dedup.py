"""Deduplication logic for samples pushed into the local store.

A sample downloaded from Tidepool carries its remote record id as
``Sample.external_id``; that id is the only reliable identity across the
two stores.  ``DedupIndex.filter_new`` drops remote candidates whose id is
already present locally.  Verify mode falls back to the weaker
timestamp heuristic because locally originated samples have no remote id.
"""

from __future__ import annotations

import logging
from typing import Iterable

from tidesync.glucose.base import Sample

logger = logging.getLogger("tidesync.glucose.sync.dedup")


def external_id_set(samples: Iterable[Sample]) -> set[str]:
    """Collect the external ids of ``samples``.

    Samples without an id cannot take part in id-based dedup; they are
    skipped and logged.

    Args:
        samples: Samples already present in the target store.

    Returns:
        Set of external id strings.
    """
    ids: set[str] = set()
    unidentifiable = 0
    for sample in samples:
        if sample.external_id:
            ids.add(sample.external_id)
        else:
            unidentifiable += 1
    if unidentifiable:
        logger.debug(
            "Dedup: %d present sample(s) have no external id and cannot be matched",
            unidentifiable,
        )
    return ids


class DedupIndex:
    """Filter remote candidates against samples already in the local store.

    Stateless; one instance can be shared by every sync attempt.

    Usage::

        index = DedupIndex()
        to_save = index.filter_new(candidates=remote, already_present=local)
    """

    def filter_new(
        self, candidates: list[Sample], already_present: list[Sample]
    ) -> list[Sample]:
        """Return the candidates not already represented, in input order.

        A candidate without an external id is always treated as new.  That
        can push a duplicate, so each one is logged as a warning rather
        than matched heuristically.

        Args:
            candidates:      Samples that may need saving.
            already_present: Samples the store already holds.

        Returns:
            Subset of ``candidates`` to save.
        """
        present = external_id_set(already_present)
        new: list[Sample] = []
        for candidate in candidates:
            if candidate.external_id is None:
                logger.warning(
                    "Dedup: candidate at %s has no external id, treating as new",
                    candidate.timestamp.isoformat(),
                )
                new.append(candidate)
            elif candidate.external_id not in present:
                new.append(candidate)
        logger.debug(
            "Dedup: %d of %d candidate(s) are new (%d already present)",
            len(new), len(candidates), len(present),
        )
        return new

    def count_missing_remote(self, local: list[Sample], remote: list[Sample]) -> int:
        """Count local samples with no remote sample at the same timestamp.

        Used by verify mode to audit what the remote is missing.

        Args:
            local:  Samples from the local store.
            remote: Samples converted from remote records.

        Returns:
            Number of local samples unmatched by timestamp.
        """
        remote_times = {s.timestamp for s in remote}
        missing = [s for s in local if s.timestamp not in remote_times]
        for sample in missing:
            logger.info(
                "Verify: local sample %s at %s (%.0f mg/dL) not in remote",
                sample.id, sample.timestamp.isoformat(), sample.value,
            )
        return len(missing)
