"""Selection of candidate nodes for experiment groups under a node affinity constraint.

A selector gets the candidate nodes and the identifiers of unavailable nodes (already attempted or
already in use) and returns an assignment: one node for each requested experiment group. Nodes that
are discarded are never selected.

For `SameRack` and `SameCluster` the candidates are partitioned by locality key (rack or cluster)
and all nodes of an assignment come from a single partition. Partitions are tried in the order in
which they are first seen among the candidates, and within a partition the first candidate of each
group is selected. When `peers` (nodes already assigned to the other groups of the same slot) are
given, only their partition is considered.

For `DifferentCluster` every node of an assignment comes from a different cluster, and clusters of
`peers` and of `taken` nodes (nodes of other slots) are excluded as well.

Selectors are pure: they never modify the entities they are given.
"""

import typing as tp

from fleet_provisioning.environment import entities

Assignment = dict[str, entities.EnvironmentEntity]


class BaseAffinity:
    """Base class for node affinity selectors."""

    affinity: tp.ClassVar[entities.NodeAffinity]

    def __init__(self, groups: tp.Sequence[str]) -> None:
        if isinstance(groups, str):
            msg = "`groups` cannot be a string"
            raise TypeError(msg)
        if not groups:
            msg = "At least one experiment group is needed."
            raise ValueError(msg)
        self.groups = tuple(groups)

    def locality_key(self, node: entities.EnvironmentEntity) -> tp.Hashable:
        """Return locality key of the node."""
        raise NotImplementedError

    def get_candidates(
        self, nodes: tp.Iterable[entities.EnvironmentEntity], unavailable: tp.Iterable[str]
    ) -> list[entities.EnvironmentEntity]:
        """Return usable nodes in their original order."""
        if isinstance(unavailable, str):
            msg = "`unavailable` cannot be a string"
            raise TypeError(msg)

        unavailable_ids = {u.lower() for u in unavailable}
        return [
            n
            for n in nodes
            if n.entity_type == entities.EntityType.NODE
            and not n.discarded
            and n.id.lower() not in unavailable_ids
        ]

    def partitions(
        self, nodes: tp.Iterable[entities.EnvironmentEntity]
    ) -> dict[tp.Hashable, list[entities.EnvironmentEntity]]:
        """Partition nodes by locality key, in first-seen order."""
        parts: dict[tp.Hashable, list[entities.EnvironmentEntity]] = {}
        for node in nodes:
            parts.setdefault(self.locality_key(node), []).append(node)
        return parts

    def select(
        self,
        nodes: tp.Iterable[entities.EnvironmentEntity],
        *,
        unavailable: tp.Iterable[str] = (),
        groups: tp.Sequence[str] | None = None,
        peers: tp.Sequence[entities.EnvironmentEntity] = (),
        taken: tp.Sequence[entities.EnvironmentEntity] = (),
    ) -> Assignment:
        """Select one node for every group in `groups` (all experiment groups by default).

        Return empty assignment when the constraint cannot be satisfied for all the groups.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.groups})"


def _first_per_group_partial(
    nodes: tp.Sequence[entities.EnvironmentEntity], groups: tp.Sequence[str]
) -> Assignment:
    """Select first node of each group that has any node."""
    selected: Assignment = {}
    for group in groups:
        lgroup = group.lower()
        node = next((n for n in nodes if n.environment_group.lower() == lgroup), None)
        if node is not None:
            selected[group] = node
    return selected


def _first_per_group(
    nodes: tp.Sequence[entities.EnvironmentEntity], groups: tp.Sequence[str]
) -> Assignment:
    """Select first node of each group, or nothing if some group has no node."""
    selected = _first_per_group_partial(nodes, groups)
    return selected if len(selected) == len(groups) else {}


class AnyAffinity(BaseAffinity):
    """Selector that ignores node locality."""

    affinity = entities.NodeAffinity.ANY

    def locality_key(self, node: entities.EnvironmentEntity) -> tp.Hashable:  # noqa: ARG002
        return None

    def select(
        self,
        nodes: tp.Iterable[entities.EnvironmentEntity],
        *,
        unavailable: tp.Iterable[str] = (),
        groups: tp.Sequence[str] | None = None,
        peers: tp.Sequence[entities.EnvironmentEntity] = (),  # noqa: ARG002
        taken: tp.Sequence[entities.EnvironmentEntity] = (),  # noqa: ARG002
    ) -> Assignment:
        candidates = self.get_candidates(nodes, unavailable)
        return _first_per_group(candidates, groups or self.groups)


class _SameLocalityAffinity(BaseAffinity):
    def select(
        self,
        nodes: tp.Iterable[entities.EnvironmentEntity],
        *,
        unavailable: tp.Iterable[str] = (),
        groups: tp.Sequence[str] | None = None,
        peers: tp.Sequence[entities.EnvironmentEntity] = (),
        taken: tp.Sequence[entities.EnvironmentEntity] = (),  # noqa: ARG002
    ) -> Assignment:
        groups = groups or self.groups
        parts = self.partitions(self.get_candidates(nodes, unavailable))

        if peers:
            peer_keys = {self.locality_key(p) for p in peers}
            if len(peer_keys) != 1:
                msg = f"Peer nodes are spread over multiple partitions: {peer_keys}"
                raise ValueError(msg)
            return _first_per_group(parts.get(peer_keys.pop(), []), groups)

        for members in parts.values():
            selected = _first_per_group(members, groups)
            if selected:
                return selected
        return {}


class SameClusterAffinity(_SameLocalityAffinity):
    """Selector of nodes from a single cluster."""

    affinity = entities.NodeAffinity.SAME_CLUSTER

    def locality_key(self, node: entities.EnvironmentEntity) -> tp.Hashable:
        return node.cluster_name.lower()


class SameRackAffinity(_SameLocalityAffinity):
    """Selector of nodes from a single rack."""

    affinity = entities.NodeAffinity.SAME_RACK

    def locality_key(self, node: entities.EnvironmentEntity) -> tp.Hashable:
        return (node.cluster_name.lower(), node.rack_location.lower())


class DifferentClusterAffinity(BaseAffinity):
    """Selector of nodes from pairwise different clusters."""

    affinity = entities.NodeAffinity.DIFFERENT_CLUSTER

    def locality_key(self, node: entities.EnvironmentEntity) -> tp.Hashable:
        return node.cluster_name.lower()

    def select(
        self,
        nodes: tp.Iterable[entities.EnvironmentEntity],
        *,
        unavailable: tp.Iterable[str] = (),
        groups: tp.Sequence[str] | None = None,
        peers: tp.Sequence[entities.EnvironmentEntity] = (),
        taken: tp.Sequence[entities.EnvironmentEntity] = (),
    ) -> Assignment:
        groups = tuple(groups or self.groups)
        used = {self.locality_key(n) for n in (*peers, *taken)}
        parts = {
            k: v
            for k, v in self.partitions(self.get_candidates(nodes, unavailable)).items()
            if k not in used
        }
        # First candidate of every group in every cluster
        firsts = {k: _first_per_group_partial(members, groups) for k, members in parts.items()}

        def _assign(idx: int, used_keys: frozenset) -> Assignment | None:
            if idx == len(groups):
                return {}
            group = groups[idx]
            for key, per_group in firsts.items():
                node = per_group.get(group)
                if key in used_keys or node is None:
                    continue
                rest = _assign(idx + 1, used_keys | {key})
                if rest is not None:
                    return {group: node, **rest}
            return None

        return _assign(0, frozenset()) or {}


AFFINITIES: dict[entities.NodeAffinity, type[BaseAffinity]] = {
    cls.affinity: cls
    for cls in (AnyAffinity, SameClusterAffinity, SameRackAffinity, DifferentClusterAffinity)
}


def get_selector(affinity: entities.NodeAffinity, groups: tp.Sequence[str]) -> BaseAffinity:
    """Return selector for the given affinity."""
    return AFFINITIES[affinity](groups)
