"""Augmented tree class for bayesbds.

This module defines the AugmentedTree class that extends treelib's Tree
with per-branch sequences of latent rate-shift events. It supports
inserting, removing and relocating events, an undo journal used to reject
proposals, and cached per-branch rate multipliers. An edit drops the
cached multipliers of the subtree below the modified branch only; event
lookups and the likelihood still walk the whole tree.
"""

import bisect
from copy import deepcopy
from dataclasses import dataclass, replace
from typing import Any, Iterator, Sequence
import numpy as np
from treelib import Tree as TreelibTree
from treelib import Node as TreelibNode
from .exceptions import DimensionError, ConfigurationError
from .mytyping import NDArrayFloat, RatePair


@dataclass(frozen=True)
class ShiftEvent:
    """
    A rate-shift event on a branch.

    Attributes
    ----------
    offset : float
        Time from the rootward end of the branch to the event.
    speciation_multiplier : float
        Factor applied to the speciation rate from the event towards the tips.
    extinction_multiplier : float
        Factor applied to the extinction rate from the event towards the tips.
    """
    offset: float
    speciation_multiplier: float = 1.0
    extinction_multiplier: float = 1.0


class Branch(TreelibNode):
    """
    A treelib node representing the branch that ends at a tree vertex.

    The root branch has length 0 unless a stem is given.

    Attributes
    ----------
    length : float
        The branch length.
    age : float
        Age (time before present) of the tipward end of the branch.
    name : str
        Taxon name for tips, empty for internal branches.
    """
    def __init__(self, id: int, length: float, name: str = ''):
        super().__init__(tag=name if name else str(id), identifier=id)
        if length < 0:
            raise ConfigurationError(f'Branch {id} has negative length {length}')
        self.length = float(length)
        self.name = name
        self.age = np.nan

    @property
    def id(self):
        return self.identifier


class AugmentedTree(TreelibTree):
    """
    Rooted phylogeny whose branches carry ordered rate-shift events.

    Topology and branch lengths are fixed after construction; only events are
    added, removed or relocated. Every event mutation is recorded in a journal
    so that a rejected proposal can be rolled back exactly (see rollback and
    commit).

    Attributes
    ----------
    id_counter : int
        Counter for unique branch identifiers.
    debug : bool
        If True, validates the event bookkeeping after every mutation.
    """
    node_class = Branch

    def __init__(self, debug: bool = False):
        super().__init__(node_class=self.node_class)
        self.id_counter: int = 0
        self.debug = debug
        self._events: dict[int, list[ShiftEvent]] = {}
        self._n_events = 0
        self._journal: list[tuple] = []
        self._mult_cache: dict[int, RatePair] = {}
        self._layout: tuple[list[int], np.ndarray] | None = None

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def add_branch(self, length: float, parent: Branch | int | None = None, name: str = '') -> Branch:
        """
        Add a branch (and the vertex at its tipward end) to the tree.

        Parameters
        ----------
        length : float
            Length of the new branch.
        parent : Branch, int or None
            Parent branch, None for the root.
        name : str, optional
            Taxon name for tips.

        Returns
        -------
        Branch
            The new branch.
        """
        branch = self.node_class(self.id_counter, length=length, name=name)
        parent_id = parent.id if isinstance(parent, Branch) else parent
        super().add_node(branch, parent_id)
        self._events[branch.id] = []
        self.id_counter += 1
        self._layout = None
        return branch

    @classmethod
    def from_parents(cls, parents: Sequence[int], lengths: Sequence[float], names: Sequence[str] | None = None, debug: bool = False) -> 'AugmentedTree':
        """
        Build a tree from a parent index table.

        Parameters
        ----------
        parents : Sequence[int]
            parents[i] is the index of the parent of vertex i, -1 for the root.
        lengths : Sequence[float]
            lengths[i] is the length of the branch ending at vertex i.
        names : Sequence[str] or None, optional
            Tip names, empty strings for internal vertices.

        Returns
        -------
        AugmentedTree
        """
        n = len(parents)
        if len(lengths) != n:
            raise ConfigurationError('parents and lengths must have the same length')
        names = list(names) if names is not None else [''] * n
        roots = [i for i, p in enumerate(parents) if p < 0]
        if len(roots) != 1:
            raise ConfigurationError(f'Expected exactly one root, found {len(roots)}')
        kids: dict[int, list[int]] = {i: [] for i in range(n)}
        for i, p in enumerate(parents):
            if p >= 0:
                kids[p].append(i)

        tree = cls(debug=debug)
        stack = [(roots[0], None)]
        while stack:
            idx, parent_branch = stack.pop()
            branch = tree.add_branch(lengths[idx], parent_branch, names[idx])
            for k in reversed(kids[idx]):
                stack.append((k, branch))
        if tree.size() != n:
            raise ConfigurationError('Parent table does not describe a single connected tree')
        tree._set_ages()
        return tree

    @classmethod
    def from_nested(cls, nested: tuple, debug: bool = False) -> 'AugmentedTree':
        """
        Build a tree from nested tuples.

        A tip is (name, length), an internal vertex is ([child, ...], length).

        Examples
        --------
        >>> tree = AugmentedTree.from_nested(([('A', 1.0), ('B', 1.0)], 0.0))
        """
        tree = cls(debug=debug)
        stack = [(nested, None)]
        while stack:
            (content, length), parent_branch = stack.pop()
            if isinstance(content, str):
                tree.add_branch(length, parent_branch, content)
            else:
                branch = tree.add_branch(length, parent_branch)
                for child in reversed(list(content)):
                    stack.append((child, branch))
        tree._set_ages()
        return tree

    def _set_ages(self):
        depth = {self.root: self.get_branch(self.root).length}
        for bid in self.preorder():
            for child in self.children(bid):
                depth[child.id] = depth[bid] + child.length
        height = max(depth.values())
        for bid, d in depth.items():
            self.get_branch(bid).age = height - d

    # ------------------------------------------------------------------
    # topology access
    # ------------------------------------------------------------------

    def get_branch(self, bid: int) -> Branch:
        if (branch := super().get_node(bid)) is None:
            raise ValueError(f'Branch {bid} does not exist')
        return branch

    def get_root(self) -> Branch:
        return self.get_branch(self.root)

    def get_children(self, branch: Branch | int) -> list[Branch]:
        bid = branch.id if isinstance(branch, Branch) else branch
        return self.children(bid)

    def get_parent(self, branch: Branch | int) -> Branch | None:
        bid = branch.id if isinstance(branch, Branch) else branch
        return self.parent(bid)

    def is_tip(self, bid: int) -> bool:
        return len(self.is_branch(bid)) == 0

    def preorder(self, start: int | None = None) -> Iterator[int]:
        """Iterate branch ids root first, children in insertion order."""
        stack = [self.root if start is None else start]
        while stack:
            bid = stack.pop()
            yield bid
            stack.extend(reversed(self.is_branch(bid)))

    def postorder(self) -> list[int]:
        """Branch ids with every child before its parent."""
        return list(self.preorder())[::-1]

    def tips(self) -> list[Branch]:
        return [self.get_branch(bid) for bid in self.preorder() if self.is_tip(bid)]

    def tip_names(self) -> list[str]:
        return [b.name for b in self.tips()]

    def n_tips(self) -> int:
        return len(self.tips())

    def root_age(self) -> float:
        return self.get_root().age + self.get_root().length

    def total_length(self) -> float:
        return float(self._get_layout()[1][-1])

    def is_ultrametric(self, tol: float = 1e-8) -> bool:
        return all(abs(b.age) < tol for b in self.tips())

    def _get_layout(self) -> tuple[list[int], np.ndarray]:
        # branches with positive length laid end to end on [0, L)
        if self._layout is None:
            ids = [bid for bid in self.preorder() if self.get_branch(bid).length > 0]
            cum = np.concatenate([[0.0], np.cumsum([self.get_branch(bid).length for bid in ids])])
            self._layout = (ids, cum)
        return self._layout

    def position_to_branch(self, x: float) -> tuple[int, float]:
        """
        Map a point on [0, total_length) to a branch and an offset along it.

        Parameters
        ----------
        x : float
            Position along the concatenated branches.

        Returns
        -------
        tuple
            (branch id, offset from the rootward end)
        """
        ids, cum = self._get_layout()
        if not 0 <= x < cum[-1]:
            raise ValueError(f'Position {x} outside [0, {cum[-1]})')
        k = int(np.searchsorted(cum, x, side='right')) - 1
        return ids[k], x - cum[k]

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def events_on(self, branch: Branch | int) -> tuple[ShiftEvent, ...]:
        bid = branch.id if isinstance(branch, Branch) else branch
        return tuple(self._events[bid])

    def all_events(self) -> list[tuple[int, int, ShiftEvent]]:
        """
        List every event as (branch id, index on branch, event).
        """
        return [(bid, i, ev) for bid in self.preorder() for i, ev in enumerate(self._events[bid])]

    def total_num_events(self) -> int:
        return self._n_events

    def num_events_per_branch(self) -> dict[int, int]:
        return {bid: len(evs) for bid, evs in self._events.items()}

    def get_event(self, bid: int, index: int) -> ShiftEvent:
        return self._events[bid][index]

    def _insert(self, bid: int, event: ShiftEvent) -> int:
        branch = self.get_branch(bid)
        if not 0 < event.offset < branch.length:
            raise DimensionError(f'Event offset {event.offset} outside branch {bid} of length {branch.length}')
        evs = self._events[bid]
        index = bisect.bisect_left(evs, event.offset, key=lambda e: e.offset)
        if index < len(evs) and evs[index].offset == event.offset:
            raise DimensionError(f'Two events at the same offset on branch {bid}')
        evs.insert(index, event)
        self._n_events += 1
        self._invalidate(bid)
        return index

    def _pop(self, bid: int, index: int) -> ShiftEvent:
        evs = self._events[bid]
        if not 0 <= index < len(evs):
            raise DimensionError(f'No event {index} on branch {bid} ({len(evs)} events)')
        event = evs.pop(index)
        self._n_events -= 1
        self._invalidate(bid)
        return event

    def add_event(self, branch: Branch | int, event: ShiftEvent) -> int:
        """
        Insert an event keeping the branch's events ordered by offset.

        Parameters
        ----------
        branch : Branch or int
            Branch receiving the event.
        event : ShiftEvent
            The new event.

        Returns
        -------
        int
            Index of the event on the branch.

        Raises
        ------
        DimensionError
            If the offset lies outside the branch or collides with another event.
        """
        bid = branch.id if isinstance(branch, Branch) else branch
        index = self._insert(bid, event)
        self._journal.append(('add', bid, event))
        self._check()
        return index

    def remove_event(self, branch: Branch | int, index: int) -> ShiftEvent:
        bid = branch.id if isinstance(branch, Branch) else branch
        event = self._pop(bid, index)
        self._journal.append(('remove', bid, event))
        self._check()
        return event

    def update_event(self, branch: Branch | int, index: int, **changes: Any) -> ShiftEvent:
        """
        Replace fields of an event (offset, speciation_multiplier, extinction_multiplier).

        Returns
        -------
        ShiftEvent
            The new event.
        """
        bid = branch.id if isinstance(branch, Branch) else branch
        old = self._pop(bid, index)
        new = replace(old, **changes)
        try:
            self._insert(bid, new)
        except DimensionError:
            self._insert(bid, old)
            raise
        self._journal.append(('update', bid, old, new))
        self._check()
        return new

    def relocate_event(self, branch: Branch | int, index: int, new_branch: Branch | int, new_offset: float) -> int:
        """
        Move an event to another position, possibly on another branch.

        Returns
        -------
        int
            Index of the event on its new branch.
        """
        bid = branch.id if isinstance(branch, Branch) else branch
        new_bid = new_branch.id if isinstance(new_branch, Branch) else new_branch
        old = self._pop(bid, index)
        new = replace(old, offset=new_offset)
        try:
            new_index = self._insert(new_bid, new)
        except DimensionError:
            self._insert(bid, old)
            raise
        self._journal.append(('relocate', bid, old, new_bid, new))
        self._check()
        return new_index

    def clear_events(self):
        for bid in list(self._events):
            while self._events[bid]:
                self.remove_event(bid, len(self._events[bid]) - 1)

    def _find(self, bid: int, event: ShiftEvent) -> int:
        for i, ev in enumerate(self._events[bid]):
            if ev is event:
                return i
        raise DimensionError(f'Journaled event missing from branch {bid}')

    # ------------------------------------------------------------------
    # journal
    # ------------------------------------------------------------------

    def journal_size(self) -> int:
        return len(self._journal)

    def commit(self):
        """Accept all mutations since the last commit."""
        self._journal.clear()

    def rollback(self):
        """Undo all mutations since the last commit, most recent first."""
        while self._journal:
            op = self._journal.pop()
            kind = op[0]
            if kind == 'add':
                _, bid, event = op
                self._pop(bid, self._find(bid, event))
            elif kind == 'remove':
                _, bid, event = op
                self._insert(bid, event)
            elif kind == 'update':
                _, bid, old, new = op
                self._pop(bid, self._find(bid, new))
                self._insert(bid, old)
            elif kind == 'relocate':
                _, bid, old, new_bid, new = op
                self._pop(new_bid, self._find(new_bid, new))
                self._insert(bid, old)
        self._check()

    # ------------------------------------------------------------------
    # rate multipliers
    # ------------------------------------------------------------------

    def _invalidate(self, bid: int):
        # events on bid change the multipliers of every branch below it
        for child in self.is_branch(bid):
            if child in self._mult_cache:
                for nid in self.preorder(child):
                    self._mult_cache.pop(nid, None)

    def start_multipliers(self, bid: int) -> RatePair:
        """
        Cumulative (speciation, extinction) multipliers in force at the rootward end of a branch.
        """
        if bid in self._mult_cache:
            return self._mult_cache[bid]
        # walk up to the nearest cached ancestor, then fill the path downwards
        path = [bid]
        parent = self.parent(bid)
        while parent is not None and parent.id not in self._mult_cache:
            path.append(parent.id)
            parent = self.parent(parent.id)
        for nid in reversed(path):
            par = self.parent(nid)
            if par is None:
                self._mult_cache[nid] = (1.0, 1.0)
            else:
                self._mult_cache[nid] = self.end_multipliers(par.id)
        return self._mult_cache[bid]

    def end_multipliers(self, bid: int) -> RatePair:
        lam, mu = self.start_multipliers(bid)
        for ev in self._events[bid]:
            lam *= ev.speciation_multiplier
            mu *= ev.extinction_multiplier
        return lam, mu

    def branch_multipliers(self) -> dict[int, RatePair]:
        """Cumulative (speciation, extinction) multipliers at the tipward end of every branch."""
        return {bid: self.end_multipliers(bid) for bid in self.preorder()}

    def segments(self, bid: int, speciation: float, extinction: float) -> list[tuple[float, float, float]]:
        """
        Split a branch into constant-rate segments.

        Parameters
        ----------
        bid : int
            Branch identifier.
        speciation, extinction : float
            Root-level rates.

        Returns
        -------
        list
            (duration, speciation rate, extinction rate) from the rootward end to the tipward end.
        """
        length = self.get_branch(bid).length
        lam, mu = self.start_multipliers(bid)
        out = []
        prev = 0.0
        for ev in self._events[bid]:
            out.append((ev.offset - prev, speciation*lam, extinction*mu))
            lam *= ev.speciation_multiplier
            mu *= ev.extinction_multiplier
            prev = ev.offset
        out.append((length - prev, speciation*lam, extinction*mu))
        return out

    def branch_average_rates(self, speciation: float, extinction: float) -> tuple[NDArrayFloat, NDArrayFloat]:
        """
        Time-averaged speciation and extinction rates of every branch, in preorder.

        Zero-length branches report the rates at their rootward end.
        """
        ids = list(self.preorder())
        lam_avg = np.empty(len(ids))
        mu_avg = np.empty(len(ids))
        for k, bid in enumerate(ids):
            segs = self.segments(bid, speciation, extinction)
            length = sum(s[0] for s in segs)
            if length == 0:
                lam_avg[k], mu_avg[k] = segs[0][1], segs[0][2]
            else:
                lam_avg[k] = sum(d*l for d, l, _ in segs)/length
                mu_avg[k] = sum(d*m for d, _, m in segs)/length
        return lam_avg, mu_avg

    # ------------------------------------------------------------------
    # validity, copy, output
    # ------------------------------------------------------------------

    def _check(self):
        if self.debug:
            self.validate()

    def validate(self):
        """
        Check event ordering, spans and counts.

        Raises
        ------
        DimensionError
            If any invariant of the event bookkeeping is violated.
        """
        total = 0
        if set(self._events) != set(self.nodes):
            raise DimensionError('Event arena and branches are out of sync')
        for bid, evs in self._events.items():
            length = self.get_branch(bid).length
            offsets = [e.offset for e in evs]
            if any(not 0 < x < length for x in offsets):
                raise DimensionError(f'Event outside the span of branch {bid}')
            if any(b <= a for a, b in zip(offsets, offsets[1:])):
                raise DimensionError(f'Events on branch {bid} are not strictly ordered')
            total += len(evs)
        if total != self._n_events:
            raise DimensionError(f'Event count {self._n_events} differs from the per-branch sum {total}')

    def is_valid(self) -> bool:
        try:
            self.validate()
        except DimensionError:
            return False
        return True

    def copy(self) -> 'AugmentedTree':
        return deepcopy(self)

    def same_events(self, other: 'AugmentedTree') -> bool:
        return self._events == other._events

    def to_newick(self, annotate: bool = True, speciation: float | None = None, extinction: float | None = None, digits: int = 6) -> str:
        """
        Newick representation of the tree.

        Parameters
        ----------
        annotate : bool, optional
            Append [&nevents=k] comments; with root rates given also the branch average rates.
        speciation, extinction : float or None
            Root-level rates used to annotate average branch rates.

        Returns
        -------
        str
        """
        rates = None
        if annotate and speciation is not None and extinction is not None:
            lam, mu = self.branch_average_rates(speciation, extinction)
            rates = {bid: (lam[k], mu[k]) for k, bid in enumerate(self.preorder())}

        def _fmt(bid: int) -> str:
            branch = self.get_branch(bid)
            kids = self.is_branch(bid)
            label = branch.name if not kids else ''
            if kids:
                label = '(' + ','.join(_fmt(k) for k in kids) + ')' + label
            if annotate:
                ann = f'&nevents={len(self._events[bid])}'
                if rates is not None:
                    ann += f',lambda={rates[bid][0]:.{digits}g},mu={rates[bid][1]:.{digits}g}'
                label += f'[{ann}]'
            return f'{label}:{branch.length:.{digits}g}'

        return _fmt(self.root) + ';'

    def __repr__(self):
        return f'AugmentedTree(tips={self.n_tips()}, events={self._n_events})'


def sim_bd_tree(n_tips: int, speciation: float, extinction: float, rng: np.random.Generator, max_attempts: int = 1000) -> AugmentedTree:
    """
    Simulate a reconstructed (extant lineages only) birth-death tree.

    The process starts from two crown lineages and stops when n_tips lineages
    are alive; the last waiting time is drawn from the total event rate without
    applying the event. Extinct lineages are pruned and unary vertices collapsed.

    Parameters
    ----------
    n_tips : int
        Number of extant tips.
    speciation, extinction : float
        Constant rates.
    rng : np.random.Generator
        Random generator.
    max_attempts : int, optional
        Restarts allowed when the whole clade dies out.

    Returns
    -------
    AugmentedTree
        An ultrametric tree with tips named t1..tn.
    """
    if n_tips < 2:
        raise ConfigurationError('At least two tips are required')
    for _ in range(max_attempts):
        # vertex: [parent, birth time, end time, children, extinct]
        verts = [[-1, 0.0, 0.0, [1, 2], False], [0, 0.0, None, [], False], [0, 0.0, None, [], False]]
        alive = [1, 2]
        t = 0.0
        tot = speciation + extinction
        while 0 < len(alive) < n_tips:
            t += rng.exponential(1/(len(alive)*tot))
            pos = int(rng.integers(len(alive)))
            v = alive[pos]
            verts[v][2] = t
            if rng.random() < speciation/tot:
                alive.pop(pos)
                for _k in range(2):
                    verts.append([v, t, None, [], False])
                    verts[v][3].append(len(verts)-1)
                    alive.append(len(verts)-1)
            else:
                verts[v][4] = True
                alive.pop(pos)
        if len(alive) == 0:
            continue
        t_end = t + rng.exponential(1/(len(alive)*tot))
        for v in alive:
            verts[v][2] = t_end

        names = iter(f't{i}' for i in range(1, n_tips+1))

        def _prune(v: int):
            parent, birth, end, kids, extinct = verts[v]
            length = end - birth
            if not kids:
                return None if extinct else (next(names), length)
            sub = [s for s in (_prune(k) for k in kids) if s is not None]
            if not sub:
                return None
            if len(sub) == 1:
                content, sub_len = sub[0]
                return (content, sub_len + length)
            return (sub, length)

        nested = _prune(0)
        if nested is None or isinstance(nested[0], str):
            continue
        tree = AugmentedTree.from_nested((nested[0], 0.0))
        return tree
    raise ConfigurationError(f'Simulation went extinct {max_attempts} times')
