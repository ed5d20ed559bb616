import logging

import pytest

from constraint_collector import collect_constraints
from eligibility import Eligible, EligibilityAnalyzer
from errors import MalformedTreeError
from expression_tree import (
    Assignment, Call, CallableReference, CallSite, Comparison, Conditional, FunctionSignature,
    LambdaLiteral, Literal, LocalReference, Parameter, PropertyAccess, VariableDeclaration
)
from inference_session import ConstraintKind, PostponedVariableAllocator
from stdlib_declarations import (
    BUILD_LIST, BUILD_MAP, CHAR_SEQUENCE, FLOAT, FOO, FOO_BUILDER, GET_OR_NULL, INT, IS_MORE_THAN_3, LONG,
    MAP_BUILDER_RETURNING_KEY, MAP_BUILDER_WITH_KEY, MUTABLE_LIST, MUTABLE_MAP, NUMBER, STRING, TAKE_MY_LONG,
    TO_STRING
)
from type_model import BOOLEAN, Concrete, FunctionType, TypeParameter, function_type

SUBTYPE = ConstraintKind.SUBTYPE
EQUAL = ConstraintKind.EQUAL


def _collect(callee, body, lattice, declarations, **call_site_fields):
    call_site = CallSite(callee, [LambdaLiteral(body)], declarations=declarations, **call_site_fields)
    eligible = EligibilityAnalyzer(lattice).analyze(call_site)
    assert isinstance(eligible, Eligible)
    session = PostponedVariableAllocator().allocate(call_site, eligible)
    return collect_constraints(session, lattice)


def _triples(session):
    return [(c.kind, c.left, c.right) for c in session.constraints]


def add(value):
    return Call(MUTABLE_LIST.member("add"), [Literal(value)])


def get(index=0):
    return Call(MUTABLE_LIST.member("get"), [Literal(INT, str(index))])


def put(key, value):
    return Call(MUTABLE_MAP.member("put"), [key, value])


# =============================================================================
# 1. ARGUMENTS AND DECLARATIONS
# =============================================================================

def test_argument_passing_gives_a_lower_bound(lattice, declarations):
    session = _collect(BUILD_LIST, [add(INT), add(FLOAT)], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, INT, e), (SUBTYPE, FLOAT, e)]
    assert [c.provenance.order for c in session.constraints] == [0, 1]
    assert "argument 'element' of add" in session.constraints[0].provenance.description


def test_non_null_declaration_pins_the_variable(lattice, declarations):
    """``val x: Float = get(0)``"""
    session = _collect(BUILD_LIST, [VariableDeclaration("x", get(), FLOAT)], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(EQUAL, e, FLOAT)]


def test_nullable_declaration_only_bounds_from_above(lattice, declarations):
    """``val n: Number? = getOrNull(0)``"""
    read = Call(GET_OR_NULL, [Literal(INT)])
    session = _collect(
        BUILD_LIST, [VariableDeclaration("n", read, NUMBER.with_nullability(True)), add(INT)],
        lattice, declarations,
    )
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, e, NUMBER.with_nullability(True)), (SUBTYPE, INT, e)]


def test_nullable_variable_into_a_non_null_parameter(lattice, declarations, caplog):
    """``takeMyLong(getOrNull(0))`` bounds only the non-null part of ``E?``"""
    read = Call(GET_OR_NULL, [Literal(INT)])
    with caplog.at_level(logging.DEBUG, logger="constraint_collector"):
        session = _collect(BUILD_LIST, [Call(TAKE_MY_LONG, [read])], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, e, LONG)]
    assert "flows into non-null Long" in caplog.text


def test_assignment_to_an_outer_local(lattice, declarations):
    """``y = get(0)`` where ``var y: String`` is declared outside the lambda"""
    session = _collect(
        BUILD_LIST, [Assignment("y", get())], lattice, declarations, enclosing_locals={"y": STRING},
    )
    e = session.variables[0]
    assert _triples(session) == [(EQUAL, e, STRING)]


def test_enclosing_locals_feed_arguments(lattice, declarations):
    """``putAll(baseMap)`` with ``baseMap: Map<String, Number>``"""
    put_all = Call(MUTABLE_MAP.member("putAll"), [LocalReference("baseMap")])
    session = _collect(
        BUILD_MAP, [put_all], lattice, declarations,
        enclosing_locals={"baseMap": Concrete("Map", (STRING, NUMBER))},
    )
    k, v = session.variables
    # Map<K, out V>: the key is invariant, the value covariant
    assert _triples(session) == [(EQUAL, k, STRING), (SUBTYPE, NUMBER, v)]


def test_property_of_variable_type_flows_into_a_declaration(lattice, declarations):
    """``val x: List<CharSequence> = items`` inside ``Foo<K>``"""
    items = PropertyAccess(FOO.member("items"))
    session = _collect(
        FOO_BUILDER, [VariableDeclaration("x", items, Concrete("List", (CHAR_SEQUENCE,)))], lattice, declarations,
    )
    k = session.variables[0]
    assert _triples(session) == [(SUBTYPE, k, CHAR_SEQUENCE)]


def test_callable_reference_becomes_a_function_type(lattice, declarations):
    """``val f: Function1<Int, Float> = ::get``"""
    reference = CallableReference(MUTABLE_LIST.member("get"))
    session = _collect(
        BUILD_LIST, [VariableDeclaration("f", reference, function_type((INT,), FLOAT))], lattice, declarations,
    )
    e = session.variables[0]
    assert _triples(session) == [(EQUAL, e, FLOAT)]


# =============================================================================
# 2. COMPARISONS AND RECEIVERS
# =============================================================================

def test_ordering_comparison_bounds_from_above(lattice, declarations):
    session = _collect(BUILD_LIST, [Comparison(get(), Literal(INT), "<")], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, e, INT)]


def test_equality_comparison_gives_no_evidence(lattice, declarations):
    session = _collect(BUILD_LIST, [Comparison(get(), Literal(INT), "==")], lattice, declarations)
    assert session.constraints == []


def test_universal_operations_do_not_constrain(lattice, declarations):
    session = _collect(BUILD_LIST, [Call(TO_STRING, [], receiver=get())], lattice, declarations)
    assert session.constraints == []
    assert session.usages == []


def test_operation_on_a_variable_receiver(lattice, declarations):
    """``get(0).isMoreThat3()`` says the element is a String"""
    session = _collect(BUILD_LIST, [Call(IS_MORE_THAN_3, [], receiver=get())], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, e, STRING)]
    assert [u.variable for u in session.usages] == [e]
    assert "isMoreThat3" in session.usages[0].provenance.description


# =============================================================================
# 3. LAMBDAS AND CONTROL FLOW
# =============================================================================

def test_both_branches_of_a_conditional_are_collected(lattice, declarations):
    branch = Conditional(LocalReference("flag"), [add(INT)], [add(STRING)])
    session = _collect(BUILD_LIST, [branch], lattice, declarations, enclosing_locals={"flag": BOOLEAN})
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, INT, e), (SUBTYPE, STRING, e)]


def test_nested_lambda_sees_the_outer_receiver(lattice, declarations):
    r = TypeParameter("R", "run")
    run = FunctionSignature("run", (Parameter("block", FunctionType((), r)),), r, type_parameters=(r,))
    session = _collect(BUILD_LIST, [Call(run, [LambdaLiteral([add(LONG)])])], lattice, declarations)
    e = session.variables[0]
    assert _triples(session) == [(SUBTYPE, LONG, e)]


def test_last_expression_flows_into_the_lambda_result(lattice, declarations):
    """``mapBuilderReturningKey { put(1L, "value"); 2L }``"""
    body = [put(Literal(LONG), Literal(STRING)), Literal(LONG, "2L")]
    session = _collect(MAP_BUILDER_RETURNING_KEY, body, lattice, declarations)
    k, v = session.variables
    assert _triples(session) == [(SUBTYPE, LONG, k), (SUBTYPE, STRING, v), (SUBTYPE, LONG, k)]
    assert "result of" in session.constraints[-1].provenance.description


def test_implicit_it_is_the_lambda_parameter(lattice, declarations):
    """``mapBuilderWithKey { put(it, it) }`` relates the key and value variables"""
    session = _collect(
        MAP_BUILDER_WITH_KEY, [put(LocalReference("it"), LocalReference("it"))], lattice, declarations,
    )
    k, v = session.variables
    assert _triples(session) == [(SUBTYPE, k, v)]


def test_node_reachable_twice_is_rejected(lattice, declarations):
    shared = Literal(INT, "1")
    twice = [Call(MUTABLE_LIST.member("add"), [shared]), Call(MUTABLE_LIST.member("add"), [shared])]
    with pytest.raises(MalformedTreeError):
        _collect(BUILD_LIST, twice, lattice, declarations)
