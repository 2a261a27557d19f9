# discovery.py — sample the DHT with batches of random lookups
#
# Every pass fires two batches of lookups toward random targets, all at once,
# and keeps the contacts this process has never seen before. A lookup that
# fails or runs past its timeout simply contributes nothing.

import asyncio
import itertools
import logging
from collections import OrderedDict
from typing import List, Optional

import krpc

logger = logging.getLogger(__name__)

BATCH_SIZE = 32
LOOKUP_TIMEOUT = 5.0


class NodeDiscoverer:
    def __init__(self, engine, batch_size: int = BATCH_SIZE, lookup_timeout: float = LOOKUP_TIMEOUT,
                 max_tracked: Optional[int] = None):
        self.engine = engine
        self.batch_size = batch_size
        self.lookup_timeout = lookup_timeout
        # None keeps every id for the life of the process
        self.max_tracked = max_tracked
        self.discovered: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self):
        return len(self.discovered)

    def _remember(self, hex_id: str) -> bool:
        if hex_id in self.discovered:
            return False
        self.discovered[hex_id] = None
        if self.max_tracked is not None:
            while len(self.discovered) > self.max_tracked:
                self.discovered.popitem(last=False)
        return True

    async def discover(self) -> list:
        """Contacts seen for the first time by this process, in lookup order."""
        logger.info("[~] Starting DHT node discovery...")
        queries = 2 * self.batch_size
        try:
            first = [krpc.random_node_id() for _ in range(self.batch_size)]
            second = [krpc.random_node_id() for _ in range(self.batch_size)]
            samples = await asyncio.gather(*(self.find_closest_nodes(t) for t in first + second))
        except Exception:
            logger.exception("[!] Error during node discovery")
            return []

        new_nodes = []
        for node in itertools.chain.from_iterable(samples):
            node_id = getattr(node, "node_id", None)
            if not node_id:
                continue
            if self._remember(node_id.hex()):
                new_nodes.append(node)

        if new_nodes:
            logger.info(f"[+] Discovery: {len(new_nodes)} new nodes, {len(self.discovered)} unique total, "
                        f"batch efficiency {len(new_nodes) / queries:.2f} nodes/query")
        return new_nodes

    async def find_closest_nodes(self, target: bytes) -> list:
        try:
            found = await asyncio.wait_for(self.engine.lookup(target), self.lookup_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"[~] lookup {target.hex()[:16]}.. timed out")
            return []
        except Exception as e:
            logger.debug(f"[~] lookup {target.hex()[:16]}.. failed: {e}")
            return []
        return list(found) if isinstance(found, (list, tuple)) else []
