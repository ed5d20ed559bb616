"""
Declarations of the standard collection builders, ready to feed the engine.

Models the subset of the collection library builder inference is usually
exercised against: the numeric/string hierarchy, lists and maps with their
mutable counterparts, ``buildList``/``buildMap``, and a few user-style
builders (``ItemHolder``, ``Foo``, two-lambda builders).
"""

from typing import Dict, List

from expression_tree import ClassDeclaration, DeclarationIndex, FunctionSignature, Parameter, PropertySignature
from type_lattice import TypeHierarchy, TypeLattice
from type_model import (
    ANY, BOOLEAN, NULLABLE_ANY, UNIT, Concrete, FunctionType, TypeParameter, Variance, function_type
)

INT = Concrete("Int")
LONG = Concrete("Long")
FLOAT = Concrete("Float")
DOUBLE = Concrete("Double")
NUMBER = Concrete("Number")
STRING = Concrete("String")
CHAR_SEQUENCE = Concrete("CharSequence")

SUPERTYPES: Dict[str, List[str]] = {
    "Number": [],
    "Int": ["Number"],
    "Long": ["Number"],
    "Float": ["Number"],
    "Double": ["Number"],
    "CharSequence": [],
    "String": ["CharSequence"],
    "Boolean": [],
    "Unit": [],
    "Collection": [],
    "List": ["Collection"],
    "MutableCollection": ["Collection"],
    "MutableList": ["List", "MutableCollection"],
    "Map": [],
    "MutableMap": ["Map"],
    "Pair": [],
    "ItemHolder": [],
    "Foo": [],
}

TYPE_PARAMETERS: Dict[str, List[str]] = {
    "Collection": ["out E"],
    "List": ["out E"],
    "MutableCollection": ["E"],
    "MutableList": ["E"],
    "Map": ["K", "out V"],
    "MutableMap": ["K", "V"],
    "Pair": ["out A", "out B"],
    "ItemHolder": ["T"],
    "Foo": ["T"],
}


def standard_hierarchy() -> TypeHierarchy:
    return TypeHierarchy.from_supertypes(SUPERTYPES, TYPE_PARAMETERS)


def standard_lattice() -> TypeLattice:
    return TypeLattice(standard_hierarchy())


def _param(name: str, owner: str, variance: Variance = Variance.INVARIANT) -> TypeParameter:
    return TypeParameter(name, owner, variance=variance)


def _list_of(element) -> Concrete:
    return Concrete("List", (element,))


# =============================================================================
# Classes
# =============================================================================

_E = _param("E", "MutableList")
MUTABLE_LIST = ClassDeclaration("MutableList", (_E,), (
    FunctionSignature("add", (Parameter("element", _E),), BOOLEAN, receiver=Concrete("MutableList", (_E,))),
    FunctionSignature("get", (Parameter("index", INT),), _E, receiver=Concrete("MutableList", (_E,))),
    FunctionSignature("addAll", (Parameter("elements", Concrete("Collection", (_E,))),), BOOLEAN,
                      receiver=Concrete("MutableList", (_E,))),
    PropertySignature("size", INT, receiver=Concrete("MutableList", (_E,))),
))

_K = _param("K", "MutableMap")
_V = _param("V", "MutableMap")
_MUTABLE_MAP_TYPE = Concrete("MutableMap", (_K, _V))
MUTABLE_MAP = ClassDeclaration("MutableMap", (_K, _V), (
    FunctionSignature("put", (Parameter("key", _K), Parameter("value", _V)), _V.with_nullability(True),
                      receiver=_MUTABLE_MAP_TYPE),
    FunctionSignature("putAll", (Parameter("from", Concrete("Map", (_K, _V))),), UNIT,
                      receiver=_MUTABLE_MAP_TYPE),
    FunctionSignature("get", (Parameter("key", _K),), _V.with_nullability(True), receiver=_MUTABLE_MAP_TYPE),
))

_A = _param("A", "Pair", Variance.COVARIANT)
_B = _param("B", "Pair", Variance.COVARIANT)
PAIR = ClassDeclaration("Pair", (_A, _B), (
    PropertySignature("first", _A, receiver=Concrete("Pair", (_A, _B))),
    PropertySignature("second", _B, receiver=Concrete("Pair", (_A, _B))),
))

_T = _param("T", "ItemHolder")
ITEM_HOLDER = ClassDeclaration("ItemHolder", (_T,), (
    FunctionSignature("addItem", (Parameter("x", _T),), UNIT, receiver=Concrete("ItemHolder", (_T,))),
    FunctionSignature("getLastItem", (), _T.with_nullability(True), receiver=Concrete("ItemHolder", (_T,))),
))

_FOO_T = _param("T", "Foo")
FOO = ClassDeclaration("Foo", (_FOO_T,), (
    PropertySignature("items", Concrete("MutableList", (_FOO_T,)), receiver=Concrete("Foo", (_FOO_T,))),
))

# Universal operations, callable on any receiver
TO_STRING = FunctionSignature("toString", (), STRING, receiver=ANY)
HASH_CODE = FunctionSignature("hashCode", (), INT, receiver=ANY)
EQUALS = FunctionSignature("equals", (Parameter("other", NULLABLE_ANY),), BOOLEAN, receiver=ANY)

# =============================================================================
# Extensions
# =============================================================================

_ADD_ALL_T = _param("T", "addAllItems")
ADD_ALL_ITEMS = FunctionSignature(
    "addAllItems", (Parameter("xs", _list_of(_ADD_ALL_T)),), UNIT,
    type_parameters=(_ADD_ALL_T,), receiver=Concrete("ItemHolder", (_ADD_ALL_T,)), extension=True,
)

_GET_OR_NULL_T = _param("T", "getOrNull")
GET_OR_NULL = FunctionSignature(
    "getOrNull", (Parameter("index", INT),), _GET_OR_NULL_T.with_nullability(True),
    type_parameters=(_GET_OR_NULL_T,), receiver=_list_of(_GET_OR_NULL_T), extension=True,
)

IS_MORE_THAN_3 = FunctionSignature("isMoreThat3", (), BOOLEAN, receiver=STRING, extension=True)

# =============================================================================
# Top-level functions
# =============================================================================

_LIST_OF_T = _param("T", "listOf")
LIST_OF = FunctionSignature("listOf", (Parameter("element", _LIST_OF_T),), _list_of(_LIST_OF_T),
                            type_parameters=(_LIST_OF_T,))

TAKE_MY_LONG = FunctionSignature("takeMyLong", (Parameter("x", LONG),))
TAKE_LIST_OF_STRINGS = FunctionSignature("takeListOfStrings", (Parameter("x", _list_of(STRING)),))
TAKE_FUNCTION = FunctionSignature("takeFunction", (Parameter("x", function_type((INT,), FLOAT)),))

# =============================================================================
# Builders
# =============================================================================

_BL_E = _param("E", "buildList")
BUILD_LIST = FunctionSignature(
    "buildList",
    (Parameter("builder", FunctionType((), UNIT, Concrete("MutableList", (_BL_E,)))),),
    _list_of(_BL_E),
    type_parameters=(_BL_E,),
)

_BM_K = _param("K", "buildMap")
_BM_V = _param("V", "buildMap")
BUILD_MAP = FunctionSignature(
    "buildMap",
    (Parameter("builder", FunctionType((), UNIT, Concrete("MutableMap", (_BM_K, _BM_V)))),),
    Concrete("Map", (_BM_K, _BM_V)),
    type_parameters=(_BM_K, _BM_V),
)

_IH_T = _param("T", "itemHolderBuilder")
ITEM_HOLDER_BUILDER = FunctionSignature(
    "itemHolderBuilder",
    (Parameter("builder", FunctionType((), UNIT, Concrete("ItemHolder", (_IH_T,)))),),
    Concrete("ItemHolder", (_IH_T,)),
    type_parameters=(_IH_T,),
)

_FB_K = _param("K", "fooBuilder")
FOO_BUILDER = FunctionSignature(
    "fooBuilder",
    (Parameter("builder", FunctionType((), UNIT, Concrete("Foo", (_FB_K,)))),),
    Concrete("Foo", (_FB_K,)),
    type_parameters=(_FB_K,),
)

_PB_K = _param("K", "pairBuilder")
_PB_V = _param("V", "pairBuilder")
PAIR_BUILDER = FunctionSignature(
    "pairBuilder",
    (
        Parameter("listBuilder", FunctionType((), UNIT, Concrete("MutableList", (_PB_V,)))),
        Parameter("mapBuilder", FunctionType((), UNIT, Concrete("MutableMap", (_PB_K, _PB_V)))),
    ),
    Concrete("Pair", (_list_of(_PB_V), Concrete("Map", (_PB_K, _PB_V)))),
    type_parameters=(_PB_K, _PB_V),
)

_RK_K = _param("K", "mapBuilderReturningKey")
_RK_V = _param("V", "mapBuilderReturningKey")
MAP_BUILDER_RETURNING_KEY = FunctionSignature(
    "mapBuilderReturningKey",
    (Parameter("mapBuilder", FunctionType((), _RK_K, Concrete("MutableMap", (_RK_K, _RK_V)))),),
    Concrete("Map", (_RK_K, _RK_V)),
    type_parameters=(_RK_K, _RK_V),
)

_WK_K = _param("K", "mapBuilderWithKey")
_WK_V = _param("V", "mapBuilderWithKey")
MAP_BUILDER_WITH_KEY = FunctionSignature(
    "mapBuilderWithKey",
    (Parameter("mapBuilder", FunctionType((_WK_K,), UNIT, Concrete("MutableMap", (_WK_K, _WK_V)))),),
    Concrete("Map", (_WK_K, _WK_V)),
    type_parameters=(_WK_K, _WK_V),
)


def standard_declarations() -> DeclarationIndex:
    """Classes and extensions visible inside the standard builders."""
    return DeclarationIndex(
        classes=[MUTABLE_LIST, MUTABLE_MAP, PAIR, ITEM_HOLDER, FOO],
        extensions=[ADD_ALL_ITEMS, GET_OR_NULL, IS_MORE_THAN_3],
    )
