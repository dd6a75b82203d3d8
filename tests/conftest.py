# -*- coding: utf-8 -*-

import io
import textwrap

import pytest

from ppmake import (
    PpmakeSession, PpmakeScope, PpmakeNamedScopes, PpmakeCommandFile)


@pytest.fixture
def session():
    return PpmakeSession(environ={'HOME': '/home/ppmake',
                                  'PPMAKE_TEST_ENV': 'from-env'})


@pytest.fixture
def named_scopes(session):
    return PpmakeNamedScopes(session)


@pytest.fixture
def scope(session, named_scopes):
    scope = PpmakeScope(session, named_scopes)
    scope.parent = session.global_scope
    return scope


def run_text(scope, text):
    """Interpret the text in the scope and return the produced output."""
    output = io.StringIO()
    command_file = PpmakeCommandFile(scope)
    command_file.set_output(output)
    command_file.read_stream(io.StringIO(textwrap.dedent(text)))
    return output.getvalue()


@pytest.fixture
def run(scope):
    return lambda text: run_text(scope, text)


@pytest.fixture
def run_in():
    return run_text
