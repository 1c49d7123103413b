"""Every subpackage of streaming_chat is a regular package, so wheels and tooling pick it up."""

import importlib

import pytest

SUBPACKAGES = [
    "streaming_chat.api",
    "streaming_chat.api.auth",
    "streaming_chat.conversation_database",
    "streaming_chat.conversation_database.data_models",
    "streaming_chat.llms",
    "streaming_chat.streaming",
    "streaming_chat.utils",
]


@pytest.mark.parametrize("name", SUBPACKAGES)
def test_subpackage_is_regular_package(name):
    package = importlib.import_module(name)
    # namespace packages have no __init__ file
    assert package.__file__ is not None
    assert package.__file__.endswith("__init__.py")
