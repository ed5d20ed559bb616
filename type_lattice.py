"""
Nominal subtyping lattice over a declared type hierarchy.

The hierarchy is loaded once (and validated for cycles at that point); after
loading it is read-only, so any number of inference sessions may query it
concurrently. Join/meet results are memoized in an explicitly passed,
lock-guarded LatticeCache.

Rules:
1. Nullability: ``X? <: Y`` requires ``Y`` to be nullable; ``X <: X?`` always
2. ``Nothing`` is below every type, ``Any?`` is above every type
3. Type arguments follow the declared variance of the supertype's parameters
4. Between different constructors, type arguments are carried positionally
   when the arities match (``MutableList<E> : List<E>``)
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from errors import HierarchyCycleError, HierarchyError
from type_model import (
    ANY, NOTHING, NULLABLE_ANY, Concrete, Type, Variance, contains_variables, function_arity
)

logger = logging.getLogger(__name__)


class TypeParameterDeclaration(BaseModel):
    """A type parameter of a declared generic type, e.g. ``out E``."""

    name: str
    variance: Variance = Variance.INVARIANT

    @field_validator("variance", mode="before")
    @classmethod
    def _parse_variance(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Variance.from_keyword(value)
        return value


class TypeDeclaration(BaseModel):
    """One nominal type and its direct supertypes."""

    name: str
    supertypes: List[str] = Field(default_factory=list)
    type_parameters: List[TypeParameterDeclaration] = Field(default_factory=list)

    @field_validator("type_parameters", mode="before")
    @classmethod
    def _parse_compact_parameters(cls, value: Any) -> Any:
        # Accept the compact "out E" / "in T" / "K" spelling
        if not isinstance(value, list):
            return value
        parsed = []
        for item in value:
            if isinstance(item, str):
                parts = item.split()
                if len(parts) == 2:
                    parsed.append({"name": parts[1], "variance": parts[0]})
                else:
                    parsed.append({"name": item.strip()})
            else:
                parsed.append(item)
        return parsed


class HierarchyDocument(BaseModel):
    """The declaration document a TypeHierarchy is loaded from."""

    types: List[TypeDeclaration] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_declarations(self) -> "HierarchyDocument":
        seen = set()
        for declaration in self.types:
            if declaration.name in seen:
                raise ValueError(f"Type {declaration.name!r} is declared more than once")
            seen.add(declaration.name)
            if declaration.name == NOTHING.name:
                raise ValueError(f"{NOTHING.name} is built in and cannot be declared")
            if declaration.name == ANY.name and declaration.supertypes:
                raise ValueError(f"{ANY.name} is the root type and cannot have supertypes")
        return self


class TypeHierarchy:
    """Read-only nominal supertype graph.

    Every declared type implicitly extends ``Any``; names that are referenced
    but never declared behave as direct subtypes of ``Any``.
    """

    def __init__(self, declarations: Iterable[TypeDeclaration] = ()):
        self._direct: Dict[str, Tuple[str, ...]] = {}
        self._variances: Dict[str, Tuple[Variance, ...]] = {}

        for declaration in declarations:
            self._direct[declaration.name] = tuple(declaration.supertypes)
            self._variances[declaration.name] = tuple(p.variance for p in declaration.type_parameters)

        # Referenced-but-undeclared supertypes become leaves under Any
        for supertypes in list(self._direct.values()):
            for supertype in supertypes:
                if supertype == NOTHING.name:
                    raise HierarchyError(f"{NOTHING.name} cannot be used as a supertype")
                self._direct.setdefault(supertype, ())

        self._direct.setdefault(ANY.name, ())
        self._check_acyclic()
        self._ancestors = self._compute_ancestors()
        self._descendants = self._compute_descendants()
        logger.debug(f"Loaded type hierarchy with {len(self._direct)} types")

    @classmethod
    def from_document(cls, document: HierarchyDocument) -> "TypeHierarchy":
        return cls(document.types)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TypeHierarchy":
        """Validate a mapping shaped like HierarchyDocument and load it."""
        return cls.from_document(HierarchyDocument.model_validate(data))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TypeHierarchy":
        """Load a hierarchy document from a YAML file."""
        hierarchy_path = Path(path)
        if not hierarchy_path.exists():
            raise FileNotFoundError(f"hierarchy file not found: {hierarchy_path}")
        try:
            data = yaml.safe_load(hierarchy_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise HierarchyError(f"failed to parse hierarchy: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise HierarchyError("hierarchy root must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_supertypes(
        cls,
        supertypes: Mapping[str, Iterable[str]],
        type_parameters: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> "TypeHierarchy":
        """Shorthand: ``{"Int": ["Number"]}`` plus optional ``{"List": ["out E"]}``."""
        type_parameters = type_parameters or {}
        names = list(supertypes) + [n for n in type_parameters if n not in supertypes]
        return cls.from_mapping({
            "types": [
                {
                    "name": name,
                    "supertypes": list(supertypes.get(name, ())),
                    "type_parameters": list(type_parameters.get(name, ())),
                }
                for name in names
            ]
        })

    def _check_acyclic(self):
        """Depth-first search with colouring; raises on the first back edge."""
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {name: WHITE for name in self._direct}
        path: List[str] = []

        def visit(name: str):
            colour[name] = GREY
            path.append(name)
            for supertype in self.direct_supertypes(name):
                if colour[supertype] == GREY:
                    start = path.index(supertype)
                    raise HierarchyCycleError(path[start:] + [supertype])
                if colour[supertype] == WHITE:
                    visit(supertype)
            path.pop()
            colour[name] = BLACK

        for name in sorted(self._direct):
            if colour[name] == WHITE:
                visit(name)

    def _compute_ancestors(self) -> Dict[str, FrozenSet[str]]:
        ancestors: Dict[str, FrozenSet[str]] = {}

        def closure(name: str) -> FrozenSet[str]:
            if name in ancestors:
                return ancestors[name]
            result = {name, ANY.name}
            for supertype in self.direct_supertypes(name):
                result |= closure(supertype)
            ancestors[name] = frozenset(result)
            return ancestors[name]

        for name in self._direct:
            closure(name)
        return ancestors

    def _compute_descendants(self) -> Dict[str, FrozenSet[str]]:
        descendants: Dict[str, set] = {name: set() for name in self._direct}
        for name, ancestors in self._ancestors.items():
            for ancestor in ancestors:
                descendants[ancestor].add(name)
        return {name: frozenset(names) for name, names in descendants.items()}

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._direct)

    def direct_supertypes(self, name: str) -> Tuple[str, ...]:
        return self._direct.get(name, ())

    def ancestors(self, name: str) -> FrozenSet[str]:
        """Reflexive-transitive supertypes of ``name`` (always including Any)."""
        if name == NOTHING.name:
            return self.names | {NOTHING.name}
        return self._ancestors.get(name, frozenset({name, ANY.name}))

    def descendants(self, name: str) -> FrozenSet[str]:
        """Reflexive-transitive declared subtypes of ``name`` (excluding Nothing)."""
        return self._descendants.get(name, frozenset({name}))

    def is_nominal_subtype(self, sub: str, sup: str) -> bool:
        if sub == sup or sup == ANY.name or sub == NOTHING.name:
            return True
        return sup in self.ancestors(sub)

    def variances(self, name: str) -> Optional[Tuple[Variance, ...]]:
        """Declared variance of each type parameter, or None if unknown."""
        arity = function_arity(name)
        if arity is not None:
            return (Variance.CONTRAVARIANT,) * arity + (Variance.COVARIANT,)
        return self._variances.get(name)

    def arity(self, name: str) -> Optional[int]:
        variances = self.variances(name)
        return len(variances) if variances is not None else None


class LatticeCache:
    """Thread-safe memo table for join/meet results.

    The computation itself runs outside the lock (joins recurse into the
    cache); when two threads race on the same key the first stored value wins.
    It holds at most ``max_entries`` results, dropping the
    oldest first; ``None`` lifts the cap.
    """

    def __init__(self, max_entries: Optional[int] = 100_000):
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")
        self.max_entries = max_entries
        self._entries: Dict[Tuple, Optional[Concrete]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, key: Tuple, compute: Callable[[], Optional[Concrete]]) -> Optional[Concrete]:
        with self._lock:
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
        value = compute()
        with self._lock:
            self.misses += 1
            if key in self._entries:
                return self._entries[key]
            if self.max_entries is not None and len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = value
            return value

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self):
        with self._lock:
            return len(self._entries)


class TypeLattice:
    """Subtyping, join and meet over concrete types."""

    def __init__(self, hierarchy: TypeHierarchy, cache: Optional[LatticeCache] = None):
        self.hierarchy = hierarchy
        self.cache = cache if cache is not None else LatticeCache()

    top = NULLABLE_ANY
    bottom = NOTHING

    def with_cache(self, cache: LatticeCache) -> "TypeLattice":
        """A view over the same hierarchy with a different memo table."""
        return TypeLattice(self.hierarchy, cache)

    @staticmethod
    def _require_concrete(*types: Type):
        for t in types:
            if not isinstance(t, Concrete) or contains_variables(t):
                raise ValueError(f"Lattice queries require concrete types, got {t}")

    def upcast(self, t: Concrete, target: str) -> Optional[Concrete]:
        """View ``t`` as an instance of the supertype constructor ``target``.

        Returns None when ``target`` is not a nominal supertype or the type
        arguments cannot be carried over.
        """
        if not self.hierarchy.is_nominal_subtype(t.name, target):
            return None
        if t.name == target:
            return t
        if target == ANY.name:
            return ANY.with_nullability(t.nullable)
        target_arity = self.hierarchy.arity(target)
        if target_arity == 0 or (target_arity is None and not t.type_arguments):
            return Concrete(target, (), t.nullable)
        if target_arity is None or len(t.type_arguments) == target_arity:
            return Concrete(target, t.type_arguments, t.nullable)
        return None

    def is_subtype(self, a: Type, b: Type) -> bool:
        """True iff ``a == b`` or ``b`` is reachable from ``a`` via supertype edges."""
        self._require_concrete(a, b)
        return self._is_subtype(a, b)

    def _is_subtype(self, a: Concrete, b: Concrete) -> bool:
        if a == b:
            return True
        if a.nullable and not b.nullable:
            return False
        if a.name == NOTHING.name:
            return True
        if b.name == ANY.name and not b.type_arguments:
            return True
        if not b.type_arguments:
            return self.hierarchy.is_nominal_subtype(a.name, b.name)

        viewed = self.upcast(a, b.name)
        if viewed is None or len(viewed.type_arguments) != len(b.type_arguments):
            return False
        variances = self.hierarchy.variances(b.name) or (Variance.INVARIANT,) * len(b.type_arguments)
        for variance, sub_arg, sup_arg in zip(variances, viewed.type_arguments, b.type_arguments):
            if variance == Variance.COVARIANT:
                if not self._is_subtype(sub_arg, sup_arg):
                    return False
            elif variance == Variance.CONTRAVARIANT:
                if not self._is_subtype(sup_arg, sub_arg):
                    return False
            elif sub_arg != sup_arg:
                return False
        return True

    @staticmethod
    def _pair_key(operation: str, a: Concrete, b: Concrete) -> Tuple:
        # join/meet are commutative; order the operands for a shared entry
        first, second = sorted((a, b), key=str)
        return (operation, first, second)

    def join(self, a: Type, b: Type) -> Concrete:
        """Least common supertype; degrades to ``Any``/``Any?`` in the worst case."""
        self._require_concrete(a, b)
        return self.cache.get_or_compute(self._pair_key("join", a, b), lambda: self._compute_join(a, b))

    def _compute_join(self, a: Concrete, b: Concrete) -> Concrete:
        if self._is_subtype(a, b):
            return b
        if self._is_subtype(b, a):
            return a

        nullable = a.nullable or b.nullable
        common = self.hierarchy.ancestors(a.name) & self.hierarchy.ancestors(b.name)
        candidates = []
        for name in common:
            if name == ANY.name:
                continue
            viewed_a = self.upcast(a.non_null(), name)
            viewed_b = self.upcast(b.non_null(), name)
            if viewed_a is None or viewed_b is None:
                continue
            candidate = self._join_arguments(viewed_a, viewed_b)
            if candidate is not None:
                candidates.append(candidate.with_nullability(nullable))

        minimal = [
            c for c in candidates
            if not any(o.name != c.name and self.hierarchy.is_nominal_subtype(o.name, c.name) for o in candidates)
        ]
        if not minimal:
            return ANY.with_nullability(nullable)

        minimal.sort(key=str)
        result = minimal[0]
        for other in minimal[1:]:
            # Several unrelated nearest ancestors: climb until they meet
            result = self.join(result, other)
        return result

    def _join_arguments(self, a: Concrete, b: Concrete) -> Optional[Concrete]:
        """Combine the arguments of two views of the same constructor, or None."""
        if a.type_arguments == b.type_arguments:
            return a
        if len(a.type_arguments) != len(b.type_arguments):
            return None
        variances = self.hierarchy.variances(a.name) or (Variance.INVARIANT,) * len(a.type_arguments)
        arguments = []
        for variance, left, right in zip(variances, a.type_arguments, b.type_arguments):
            if left == right:
                arguments.append(left)
            elif variance == Variance.COVARIANT:
                arguments.append(self.join(left, right))
            elif variance == Variance.CONTRAVARIANT:
                lower = self.meet(left, right)
                if lower is None:
                    return None
                arguments.append(lower)
            else:
                return None
        return Concrete(a.name, tuple(arguments), a.nullable)

    def meet(self, a: Type, b: Type) -> Optional[Concrete]:
        """Greatest common declared subtype, or None when there is no unique one."""
        self._require_concrete(a, b)
        return self.cache.get_or_compute(self._pair_key("meet", a, b), lambda: self._compute_meet(a, b))

    def _compute_meet(self, a: Concrete, b: Concrete) -> Optional[Concrete]:
        if self._is_subtype(a, b):
            return a
        if self._is_subtype(b, a):
            return b

        nullable = a.nullable and b.nullable
        common = self.hierarchy.descendants(a.name) & self.hierarchy.descendants(b.name)
        candidates = []
        for name in common:
            arity = self.hierarchy.arity(name)
            if arity:
                source = a if len(a.type_arguments) == arity else b
                if len(source.type_arguments) != arity:
                    continue
                candidate = Concrete(name, source.type_arguments, nullable)
            else:
                candidate = Concrete(name, (), nullable)
            if self._is_subtype(candidate, a) and self._is_subtype(candidate, b):
                candidates.append(candidate)

        maximal = [
            c for c in candidates
            if not any(o.name != c.name and self.hierarchy.is_nominal_subtype(c.name, o.name) for o in candidates)
        ]
        if len(maximal) == 1:
            return maximal[0]
        if maximal:
            logger.debug(f"No unique meet for {a} and {b}: {sorted(str(m) for m in maximal)}")
        return None

    def join_all(self, types: Iterable[Type]) -> Concrete:
        """Fold join over ``types``; the empty fold is the bottom type."""
        result = self.bottom
        for t in types:
            result = self.join(result, t)
        return result

    def meet_all(self, types: Iterable[Type]) -> Optional[Concrete]:
        """Fold meet over ``types``; the empty fold is the top type, None on failure."""
        result = self.top
        for t in types:
            result = self.meet(result, t)
            if result is None:
                return None
        return result
