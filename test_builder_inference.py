"""
End-to-end builder inference over the standard collection declarations.

Each test builds the already-resolved expression tree of a builder call and
checks the inferred type arguments, e.g.

    buildMap {
        putAll(baseMap)
        if (flag) put(additionalEntry.first, additionalEntry.second)
    }
"""

import logging

import pytest

from builder_inference import (
    UNCONSTRAINED_VARIABLE, BuilderInferenceEngine, Failure, SessionFinalizer, Success,
    infer_builder_type_arguments
)
from constraint_collector import ConstraintCollector
from constraint_resolver import ConstraintResolver, FailureKind
from diagnostics import CollectingDiagnosticsSink
from eligibility import NotEligible
from errors import BuilderInferenceError, MalformedTreeError, NotEligibleError
from expression_tree import (
    Call, CallableReference, CallSite, Comparison, Conditional, LambdaLiteral, Literal, LocalReference,
    PropertyAccess, PropertySignature, ThisReference, VariableDeclaration
)
from settings import InferenceSettings
from stdlib_declarations import (
    ADD_ALL_ITEMS, BUILD_LIST, BUILD_MAP, CHAR_SEQUENCE, DOUBLE, EQUALS, FLOAT, FOO, FOO_BUILDER,
    GET_OR_NULL, HASH_CODE, INT, IS_MORE_THAN_3, ITEM_HOLDER, ITEM_HOLDER_BUILDER, LIST_OF, LONG,
    MAP_BUILDER_RETURNING_KEY, MAP_BUILDER_WITH_KEY, MUTABLE_LIST, MUTABLE_MAP, NUMBER, PAIR, PAIR_BUILDER,
    STRING, TAKE_FUNCTION, TAKE_LIST_OF_STRINGS, TAKE_MY_LONG, TO_STRING, standard_declarations,
    standard_hierarchy
)
from type_model import BOOLEAN, NULLABLE_ANY, Concrete, SourcePosition, function_type


def List(arg):
    return Concrete("List", (arg,))


def Map(key, value):
    return Concrete("Map", (key, value))


def add(value):
    return Call(MUTABLE_LIST.member("add"), [Literal(value)])


def get(index=0):
    return Call(MUTABLE_LIST.member("get"), [Literal(INT, str(index))])


def put(key, value):
    return Call(MUTABLE_MAP.member("put"), [key, value])


def build_list(*body, **call_site_fields):
    call_site_fields.setdefault("declarations", standard_declarations())
    return CallSite(BUILD_LIST, [LambdaLiteral(list(body))], **call_site_fields)


# =============================================================================
# 1. BASIC SCENARIOS
# =============================================================================

def test_add_infers_the_element_type(engine, results):
    """``buildList { add(1) }`` is a ``List<Int>``"""
    call_site = build_list(add(INT))
    outcome = engine.try_infer(call_site)

    assert isinstance(outcome, Success)
    assert outcome.type_arguments == {"E": INT}
    assert outcome.return_type == List(INT)
    assert outcome.receiver_types == {0: Concrete("MutableList", (INT,))}
    assert results.get(call_site) is outcome


def test_declared_float_then_add_int_is_incompatible(engine, sink, results):
    assert engine.try_infer(build_list(VariableDeclaration("x", get(), FLOAT))).type_arguments == {"E": FLOAT}

    call_site = build_list(
        VariableDeclaration("x", get(), FLOAT, position=SourcePosition(2, 5)),
        add(INT),
    )
    outcome = engine.try_infer(call_site)

    assert isinstance(outcome, Failure)
    assert outcome.kind == FailureKind.INCOMPATIBLE_CONSTRAINTS
    assert call_site not in results
    errors = sink.with_code("incompatible_constraints")
    assert len(errors) == 1
    assert errors[0].provenance.position == SourcePosition(2, 5)
    assert "buildList" in errors[0].format()


def test_put_infers_key_and_value(engine):
    """``buildMap { put("key", 2) }`` is a ``Map<String, Int>``"""
    call_site = CallSite(BUILD_MAP, [LambdaLiteral([put(Literal(STRING), Literal(INT))])],
                         declarations=standard_declarations())
    outcome = engine.try_infer(call_site)
    assert outcome.type_arguments == {"K": STRING, "V": INT}
    assert outcome.return_type == Map(STRING, INT)


def test_nullable_upper_bound_and_add(engine):
    """``val n: Number? = getOrNull(0); add(1)`` gives ``Int``"""
    read = Call(GET_OR_NULL, [Literal(INT)])
    outcome = engine.try_infer(build_list(VariableDeclaration("n", read, NUMBER.with_nullability(True)), add(INT)))
    assert outcome.type_arguments == {"E": INT}


def test_universal_operations_leave_the_declared_bound(engine, sink):
    calls = [Call(op, [Literal(STRING)] if op is EQUALS else [], receiver=get(i))
             for i, op in enumerate((TO_STRING, HASH_CODE, EQUALS))]
    outcome = engine.try_infer(build_list(*calls))
    assert outcome.type_arguments == {"E": NULLABLE_ANY}
    assert sink.diagnostics == []


def test_joins_lower_bounds(engine):
    outcome = engine.try_infer(build_list(add(INT), add(DOUBLE)))
    assert outcome.type_arguments == {"E": NUMBER}


def test_unrelated_lower_bounds_join_to_any(engine):
    outcome = engine.try_infer(build_list(add(INT), add(STRING)))
    assert outcome.type_arguments == {"E": Concrete("Any")}


# =============================================================================
# 2. COLLECTION BUILDERS
# =============================================================================

def test_build_map_with_put_all_and_conditional_put(engine):
    entry = LocalReference("additionalEntry")
    body = [
        Call(MUTABLE_MAP.member("putAll"), [LocalReference("baseMap")]),
        Conditional(
            LocalReference("flag"),
            [put(PropertyAccess(PAIR.member("first"), entry),
                 PropertyAccess(PAIR.member("second"), LocalReference("additionalEntry")))],
        ),
    ]
    call_site = CallSite(
        BUILD_MAP, [LambdaLiteral(body)], declarations=standard_declarations(),
        enclosing_locals={
            "baseMap": Map(STRING, NUMBER),
            "additionalEntry": Concrete("Pair", (STRING, INT)),
            "flag": BOOLEAN,
        },
    )
    outcome = engine.try_infer(call_site)
    assert outcome.type_arguments == {"K": STRING, "V": NUMBER}
    assert outcome.return_type == Map(STRING, NUMBER)


def test_map_value_used_as_a_key(engine):
    """``buildMap { put(1, "a"); put(get(1), "b") }``: the key takes both Int and the value type"""
    map_get = Call(MUTABLE_MAP.member("get"), [Literal(INT, "1")])
    call_site = CallSite(
        BUILD_MAP,
        [LambdaLiteral([put(Literal(INT, "1"), Literal(STRING, "a")), put(map_get, Literal(STRING, "b"))])],
        declarations=standard_declarations(),
    )
    outcome = engine.try_infer(call_site)

    assert isinstance(outcome, Success)
    assert outcome.type_arguments == {"K": Concrete("Any"), "V": STRING}


def test_item_holder_member_and_extension(engine):
    s = {"s": STRING}
    add_item = engine.try_infer(CallSite(
        ITEM_HOLDER_BUILDER, [LambdaLiteral([Call(ITEM_HOLDER.member("addItem"), [LocalReference("s")])])],
        enclosing_locals=s, declarations=standard_declarations(),
    ))
    add_all = engine.try_infer(CallSite(
        ITEM_HOLDER_BUILDER, [LambdaLiteral([Call(ADD_ALL_ITEMS, [Call(LIST_OF, [LocalReference("s")])])])],
        enclosing_locals=s, declarations=standard_declarations(),
    ))
    assert add_item.type_arguments == {"T": STRING}
    assert add_all.type_arguments == {"T": STRING}
    assert add_all.return_type == Concrete("ItemHolder", (STRING,))


def test_item_holder_nullable_getter(engine):
    """``val lastItem: String? = getLastItem()``"""
    last = VariableDeclaration("lastItem", Call(ITEM_HOLDER.member("getLastItem")), STRING.with_nullability(True))
    outcome = engine.try_infer(CallSite(ITEM_HOLDER_BUILDER, [LambdaLiteral([last])], declarations=standard_declarations()))
    assert outcome.type_arguments == {"T": STRING.with_nullability(True)}


def test_two_lambdas_share_a_variable(engine):
    """``pairBuilder({ add(1) }, { put("key", 2) })``"""
    call_site = CallSite(
        PAIR_BUILDER,
        [LambdaLiteral([add(INT)]), LambdaLiteral([put(Literal(STRING), Literal(INT))])],
        declarations=standard_declarations(),
    )
    outcome = engine.try_infer(call_site)
    assert outcome.type_arguments == {"K": STRING, "V": INT}
    assert outcome.return_type == Concrete("Pair", (List(INT), Map(STRING, INT)))
    assert outcome.receiver_types == {
        0: Concrete("MutableList", (INT,)),
        1: Concrete("MutableMap", (STRING, INT)),
    }


def test_lambda_result_feeds_a_type_argument(engine):
    """``mapBuilderReturningKey { put(1L, "value"); 2L }``"""
    body = [put(Literal(LONG), Literal(STRING)), Literal(LONG, "2L")]
    outcome = engine.try_infer(CallSite(MAP_BUILDER_RETURNING_KEY, [LambdaLiteral(body)], declarations=standard_declarations()))
    assert outcome.type_arguments == {"K": LONG, "V": STRING}


def test_lambda_parameter_feeds_a_type_argument(engine):
    """``mapBuilderWithKey { put(1, "value 1"); put(it, "value 2") }``"""
    body = [
        put(Literal(INT), Literal(STRING)),
        put(LocalReference("it"), Literal(STRING)),
    ]
    outcome = engine.try_infer(CallSite(MAP_BUILDER_WITH_KEY, [LambdaLiteral(body)], declarations=standard_declarations()))
    assert outcome.type_arguments == {"K": INT, "V": STRING}


def test_property_of_variable_type(engine):
    """``val x: List<CharSequence> = items`` inside ``fooBuilder``"""
    read = VariableDeclaration("x", PropertyAccess(FOO.member("items")), List(CHAR_SEQUENCE))
    outcome = engine.try_infer(CallSite(FOO_BUILDER, [LambdaLiteral([read])], declarations=standard_declarations()))
    assert outcome.type_arguments == {"K": CHAR_SEQUENCE}
    assert outcome.return_type == Concrete("Foo", (CHAR_SEQUENCE,))


# =============================================================================
# 3. EVIDENCE FROM USES
# =============================================================================

def test_local_flows_into_a_declaration(engine):
    """``val x = get(0); val y: String = x``"""
    outcome = engine.try_infer(build_list(
        VariableDeclaration("x", get()),
        VariableDeclaration("y", LocalReference("x"), STRING),
    ))
    assert outcome.type_arguments == {"E": STRING}


def test_argument_of_a_concrete_function(engine):
    """``takeMyLong(get(0))``"""
    outcome = engine.try_infer(build_list(Call(TAKE_MY_LONG, [get()])))
    assert outcome.type_arguments == {"E": LONG}


def test_extension_on_an_element(engine):
    """``get(0).isMoreThat3()``"""
    outcome = engine.try_infer(build_list(Call(IS_MORE_THAN_3, [], receiver=get())))
    assert outcome.type_arguments == {"E": STRING}


def test_this_passed_to_a_function(engine):
    """``takeListOfStrings(this)``"""
    outcome = engine.try_infer(build_list(Call(TAKE_LIST_OF_STRINGS, [ThisReference()])))
    assert outcome.type_arguments == {"E": STRING}


def test_callable_references(engine):
    """``val f: Function1<Int, Float> = ::get`` and ``takeFunction(::get)``"""
    declared = build_list(VariableDeclaration("f", CallableReference(MUTABLE_LIST.member("get")),
                                              function_type((INT,), FLOAT)))
    passed = build_list(Call(TAKE_FUNCTION, [CallableReference(MUTABLE_LIST.member("get"))]))
    assert engine.try_infer(declared).type_arguments == {"E": FLOAT}
    assert engine.try_infer(passed).type_arguments == {"E": FLOAT}


def test_ordering_comparison(engine):
    outcome = engine.try_infer(build_list(Comparison(get(), Literal(LONG), ">=")))
    assert outcome.type_arguments == {"E": LONG}


def test_expected_type_outside_the_lambda_is_not_eligible(engine, allocator):
    call_site = build_list(add(INT), expected_type=List(NUMBER))
    outcome = engine.try_infer(call_site)
    assert isinstance(outcome, NotEligible)
    assert allocator.live_variable_count == 0


def test_used_but_unconstrained_variable_warns(engine, sink, caplog):
    """Each of ``get(0).length``, ``get(1).length`` and ``get(2).length`` is reported"""
    length = PropertySignature("length", INT)
    uses = [PropertyAccess(length, get(i), position=SourcePosition(i + 2, 5)) for i in range(3)]
    with caplog.at_level(logging.WARNING, logger="builder_inference"):
        outcome = engine.try_infer(build_list(*uses))

    assert outcome.type_arguments == {"E": NULLABLE_ANY}
    warnings = sink.with_code(UNCONSTRAINED_VARIABLE)
    assert len(warnings) == 3
    assert [w.provenance.position for w in warnings] == [SourcePosition(2, 5), SourcePosition(3, 5),
                                                         SourcePosition(4, 5)]
    assert sink.warning_count() == 3
    assert not sink.has_errors()
    assert caplog.text.count("never constrained") == 3


def test_unconstrained_warning_can_be_disabled(lattice, sink):
    engine = BuilderInferenceEngine(lattice, InferenceSettings(warn_on_unconstrained_usage=False), sink)
    engine.try_infer(build_list(PropertyAccess(PropertySignature("length", INT), get())))
    assert sink.diagnostics == []


# =============================================================================
# 4. ENGINE LIFECYCLE
# =============================================================================

def test_sessions_are_released(engine, allocator):
    engine.try_infer(build_list(add(INT)))
    engine.try_infer(build_list(add(INT), add(STRING), VariableDeclaration("n", get(), NUMBER)))
    assert allocator.live_variable_count == 0


def test_malformed_tree_releases_the_session(engine, allocator):
    shared = Literal(INT, "1")
    call_site = build_list(Call(MUTABLE_LIST.member("add"), [shared]), Call(MUTABLE_LIST.member("add"), [shared]))
    with pytest.raises(MalformedTreeError):
        engine.try_infer(call_site)
    assert allocator.live_variable_count == 0


def test_finalize_is_idempotent(engine, lattice, sink, results, allocator):
    call_site = build_list(add(INT))
    session = allocator.allocate(call_site, engine.analyzer.analyze(call_site))
    ConstraintCollector(session, lattice).collect()
    resolution = ConstraintResolver(lattice).resolve(session)

    finalizer = SessionFinalizer(sink, results, allocator)
    first = finalizer.finalize(session, resolution)
    second = finalizer.finalize(session, resolution)

    assert first is second
    assert session.released
    assert len(results) == 1


def test_private_lattice_cache(lattice):
    engine = BuilderInferenceEngine(lattice, InferenceSettings(share_lattice_cache=False),
                                    CollectingDiagnosticsSink())
    outcome = engine.try_infer(build_list(add(INT), add(DOUBLE)))
    assert outcome.type_arguments == {"E": NUMBER}
    assert len(lattice.cache) == 0


def test_infer_many_keeps_input_order(lattice, sink):
    engine = BuilderInferenceEngine(lattice, InferenceSettings(max_workers=4), sink)
    elements = [INT, STRING, DOUBLE, LONG, FLOAT, CHAR_SEQUENCE] * 3
    outcomes = engine.infer_many(build_list(add(t)) for t in elements)

    assert [o.type_arguments["E"] for o in outcomes] == elements
    assert engine.allocator.live_variable_count == 0
    assert len(engine.results) == len(elements)
    assert engine.infer_many([]) == []


# =============================================================================
# 5. RAISING ENTRY POINT
# =============================================================================

def test_infer_builder_type_arguments():
    sink = CollectingDiagnosticsSink()
    assert infer_builder_type_arguments(build_list(add(INT)), standard_hierarchy(), sink=sink) == {"E": INT}

    with pytest.raises(NotEligibleError):
        infer_builder_type_arguments(build_list(add(INT), expected_type=List(INT)), standard_hierarchy(), sink=sink)

    with pytest.raises(BuilderInferenceError) as info:
        infer_builder_type_arguments(
            build_list(VariableDeclaration("x", get(), FLOAT), add(INT)), standard_hierarchy(), sink=sink,
        )
    assert "buildList" in str(info.value)
    assert sink.error_count() == 1
