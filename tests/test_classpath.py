"""Tests for classpath assembly."""
import os
import pathlib

import pytest

from mclauncher.classpath import assemble_classpath
from mclauncher.errors import EmptyClasspath


def test_order_is_libraries_then_client():
    a, b, c = pathlib.Path('/mc/libraries/a.jar'), pathlib.Path('/mc/libraries/b.jar'), pathlib.Path('/mc/versions/c.jar')
    assert assemble_classpath([a, b], c) == f"{a}{os.pathsep}{b}{os.pathsep}{c}"


def test_custom_separator_and_duplicates():
    assert assemble_classpath(['x.jar', 'y.jar', 'x.jar', 'client.jar'], 'client.jar', separator=';') == \
        'x.jar;y.jar;client.jar'


def test_client_only():
    assert assemble_classpath([], pathlib.Path('client.jar')) == 'client.jar'


def test_empty_classpath():
    with pytest.raises(EmptyClasspath):
        assemble_classpath([], None)
