"""
Decides whether builder inference applies to a call site.

Builder inference is only a fallback: whatever ordinary unification can bind
(explicit type arguments, the types of non-lambda arguments, the expected
type of the call) is bound first. What remains free and feeds the receiver of
a lambda parameter is postponed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from expression_tree import CallSite, LambdaLiteral, Operation, static_type_of
from type_lattice import TypeLattice
from type_model import (
    Concrete, Type, TypeParameter, match_type_parameters, mentions_type_parameter
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Eligible:
    """The call site takes part in builder inference.

    Attributes:
        postponed: Callee type parameters to allocate variables for, in declaration order
        builder_arguments: Indices of the lambda arguments whose bodies provide evidence
        fixed_bindings: Type parameters already bound by ordinary unification
    """

    postponed: Tuple[TypeParameter, ...]
    builder_arguments: Tuple[int, ...]
    fixed_bindings: Dict[Tuple[str, str], Type] = field(default_factory=dict)


@dataclass(frozen=True)
class NotEligible:
    """Builder inference does not apply; ordinary type checking reports what it must."""

    reason: str


Eligibility = Union[Eligible, NotEligible]


class EligibilityAnalyzer:
    """Pure predicate over call sites; holds no per-call state."""

    def __init__(self, lattice: TypeLattice):
        self.lattice = lattice

    def analyze(self, call_site: CallSite) -> Eligibility:
        callee = call_site.callee
        if not callee.type_parameters:
            return self._not_eligible(call_site, "callee has no type parameters")

        fixed = self.standard_bindings(call_site)
        free = [p for p in callee.type_parameters if p.key not in fixed]
        if not free:
            return self._not_eligible(call_site, "all type arguments are fixed by ordinary inference")

        builder_arguments: List[int] = []
        fed: Set[Tuple[str, str]] = set()
        for index, argument in enumerate(call_site.arguments):
            function_type = call_site.builder_parameter(index)
            if function_type is None or not isinstance(argument, LambdaLiteral):
                continue
            receiver = function_type.receiver
            if isinstance(receiver, TypeParameter):
                logger.debug(f"{call_site.describe()}: receiver {receiver} is a bare type parameter")
                continue
            feeding = [p for p in free if mentions_type_parameter(receiver, p)]
            if not feeding:
                continue
            if not self._exposes_evidence(call_site, receiver, feeding):
                logger.debug(f"{call_site.describe()}: {receiver} has no operation mentioning {feeding}")
                continue
            builder_arguments.append(index)
            # Everything else the lambda's type mentions is inferred from the same bodies
            fed.update(p.key for p in free if mentions_type_parameter(function_type, p))

        if not builder_arguments:
            return self._not_eligible(call_site, "no lambda argument has a receiver fed by a free type parameter")

        postponed = tuple(p for p in free if p.key in fed)
        logger.debug(
            f"{call_site.describe()}: eligible, postponing {[p.name for p in postponed]} "
            f"from arguments {builder_arguments}"
        )
        return Eligible(postponed, tuple(builder_arguments), fixed)

    def standard_bindings(self, call_site: CallSite) -> Dict[Tuple[str, str], Type]:
        """Bindings ordinary unification makes without looking into lambda bodies."""
        callee = call_site.callee
        own = {p.key for p in callee.type_parameters}
        bindings: Dict[Tuple[str, str], Type] = {}

        for parameter in callee.type_parameters:
            if parameter.name in call_site.explicit_type_arguments:
                bindings[parameter.key] = call_site.explicit_type_arguments[parameter.name]

        for parameter, argument in zip(callee.parameters, call_site.arguments):
            if isinstance(argument, LambdaLiteral):
                continue
            argument_type = static_type_of(argument, call_site.enclosing_locals)
            if argument_type is not None:
                match_type_parameters(parameter.type, argument_type, bindings, own)

        if call_site.expected_type is not None:
            match_type_parameters(callee.return_type, call_site.expected_type, bindings, own)
        return bindings

    def _exposes_evidence(self, call_site: CallSite, receiver: Concrete,
                          feeding: List[TypeParameter]) -> bool:
        """Whether some accessible operation on ``receiver`` mentions a fed class parameter.

        Operations declared on supertypes of the receiver count as well
        (``List<E>`` extensions are callable on a ``MutableList<E>`` receiver).
        """
        for name in sorted(self.lattice.hierarchy.ancestors(receiver.name)):
            viewed = self.lattice.upcast(receiver, name)
            if viewed is None:
                continue
            positions = [
                i for i, argument in enumerate(viewed.type_arguments)
                if any(mentions_type_parameter(argument, p) for p in feeding)
            ]
            if not positions:
                continue
            for operation in call_site.declarations.operations_on(name):
                if not operation.accessible:
                    continue
                for i in positions:
                    declared = self._declared_argument(operation, i)
                    if declared is not None and operation.mentions(declared):
                        return True
        return False

    @staticmethod
    def _declared_argument(operation: Operation, position: int) -> Optional[TypeParameter]:
        # The class (or extension) parameter at ``position`` of the operation's receiver
        receiver = operation.receiver
        if not isinstance(receiver, Concrete) or position >= len(receiver.type_arguments):
            return None
        argument = receiver.type_arguments[position]
        return argument if isinstance(argument, TypeParameter) else None

    @staticmethod
    def _not_eligible(call_site: CallSite, reason: str) -> NotEligible:
        logger.debug(f"{call_site.describe()}: not eligible ({reason})")
        return NotEligible(reason)
