"""
Tests for loading formula files.
"""
import textwrap

import pytest

from formulary.errors import InvalidFormula
from formulary.loader import load_formulas


def write(tmp_path, body, name="my_formulas.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


def test_formulas_function(tmp_path):
    path = write(tmp_path, """
        from formulary.dsl import formula

        def formulas():
            return [
                formula("a", url="https://example.test/a-1.0.tar.gz"),
                formula("b", url="https://example.test/b-2.1.tar.gz", depends_on=["a"]),
            ]
    """)
    loaded = load_formulas(path)
    assert sorted(loaded) == ["a", "b"]
    assert loaded["b"].version == "2.1"
    assert loaded["b"].dependency_names == ("a",)


def test_formulas_constant(tmp_path):
    path = write(tmp_path, """
        from formulary.dsl import build

        FORMULAS = [build("tool").source("https://example.test/tool-1.0.tar.gz").build()]
    """)
    assert list(load_formulas(path)) == ["tool"]


def test_dict_is_accepted(tmp_path):
    path = write(tmp_path, """
        from formulary.dsl import formula, universe

        FORMULAS = universe(formula("a", url="https://example.test/a-1.0.tar.gz"))
    """)
    assert list(load_formulas(path)) == ["a"]


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_formulas(tmp_path / "nope.py")


def test_non_python_file(tmp_path):
    path = tmp_path / "formulas.toml"
    path.write_text("")
    with pytest.raises(ValueError):
        load_formulas(path)


def test_wrong_shape(tmp_path):
    path = write(tmp_path, "FORMULAS = ['rust', 'lazyssh']\n")
    with pytest.raises(TypeError):
        load_formulas(path)


def test_nothing_defined(tmp_path):
    path = write(tmp_path, "X = 1\n")
    with pytest.raises(TypeError):
        load_formulas(path)


def test_duplicate_names(tmp_path):
    path = write(tmp_path, """
        from formulary.dsl import formula

        FORMULAS = [
            formula("a", url="https://example.test/a-1.0.tar.gz"),
            formula("a", url="https://example.test/a-2.0.tar.gz"),
        ]
    """)
    with pytest.raises(InvalidFormula):
        load_formulas(path)
