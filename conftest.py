import pytest

from builder_inference import BuilderInferenceEngine, TypeCheckingResult
from diagnostics import CollectingDiagnosticsSink
from inference_session import PostponedVariableAllocator
from settings import InferenceSettings
from stdlib_declarations import standard_declarations, standard_lattice


@pytest.fixture
def lattice():
    return standard_lattice()


@pytest.fixture
def declarations():
    return standard_declarations()


@pytest.fixture
def sink():
    return CollectingDiagnosticsSink()


@pytest.fixture
def allocator():
    return PostponedVariableAllocator()


@pytest.fixture
def results():
    return TypeCheckingResult()


@pytest.fixture
def settings():
    return InferenceSettings()


@pytest.fixture
def engine(lattice, settings, sink, allocator, results):
    return BuilderInferenceEngine(lattice, settings, sink, allocator, results)
