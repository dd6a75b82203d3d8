# -*- coding: utf-8 -*-

import os
import stat
import logging

import pytest

from ppmake import (
    PpmakeSession, PpmakeScope, PpmakeSubroutine,
    PpmakeSyntaxError, PpmakeRuntimeError)


@pytest.mark.parametrize('string', [
    '', 'plain text', '$', '[', '$ [x]', 'a]b', '$$', 'cost: $5 [approx]'])
def test_strings_without_references_are_unchanged(scope, string):
    assert scope.expand_string(string) == string


def test_define_and_expand(scope):
    scope.define_variable('CC', 'gcc')
    scope.define_variable('COMPILE', '$[CC] -c')
    assert scope.get_variable('COMPILE') == '$[CC] -c'
    assert scope.expand_variable('COMPILE') == 'gcc -c'
    assert scope.expand_string('[$[CC]]') == '[gcc]'


def test_undefined_variable_is_empty(scope):
    assert scope.expand_string('<$[NOTHING]>') == '<>'


def test_environment_is_the_last_resort(scope):
    assert scope.expand_string('$[HOME]') == '/home/ppmake'
    scope.define_variable('HOME', '/elsewhere')
    assert scope.expand_string('$[HOME]') == '/elsewhere'


def test_variable_name_may_be_computed(scope):
    scope.define_variable('KIND', 'LIB')
    scope.define_variable('LIB_NAME', 'libfoo')
    assert scope.expand_string('$[$[KIND]_NAME]') == 'libfoo'


def test_static_parent_is_searched_before_the_stack(session, scope):
    child = PpmakeScope(session)
    child.parent = scope
    scope.define_variable('X', 'parent')
    stacked = PpmakeScope(session)
    stacked.define_variable('X', 'stacked')
    with session.pushed_scope(stacked):
        assert child.get_variable('X') == 'parent'


def test_dynamic_stack_is_searched_from_the_top(session):
    lonely = PpmakeScope(session)
    lower, upper = PpmakeScope(session), PpmakeScope(session)
    lower.define_variable('X', 'lower')
    upper.define_variable('X', 'upper')
    with session.pushed_scope(lower):
        assert lonely.get_variable('X') == 'lower'
        with session.pushed_scope(upper):
            assert lonely.get_variable('X') == 'upper'
    assert lonely.get_variable('X') == ''


def test_cyclic_references_expand_to_empty(scope, caplog):
    scope.define_variable('A', '$[B]')
    scope.define_variable('B', '$[A]')
    with caplog.at_level(logging.WARNING):
        assert scope.expand_variable('A') == ''
    assert 'cyclical expansion of B' in caplog.text


def test_direct_self_reference_terminates(scope, caplog):
    scope.define_variable('L', 'x $[L]')
    with caplog.at_level(logging.WARNING):
        assert scope.expand_variable('L') == 'x x '
    assert 'cyclical expansion of L' in caplog.text


def test_expand_self_reference_only_touches_the_variable(scope):
    scope.define_variable('CFLAGS', '-O2')
    scope.define_variable('DEBUG', '-g')
    result = scope.expand_self_reference('$[CFLAGS] $[DEBUG] -Wall', 'CFLAGS')
    assert result == '-O2 $[DEBUG] -Wall'


def test_unclosed_reference_is_an_error(scope):
    with pytest.raises(PpmakeSyntaxError):
        scope.expand_string('$[unclosed')
    with pytest.raises(PpmakeSyntaxError):
        scope.expand_string('$[if $[X],a')


def test_set_variable_changes_the_nearest_definition(session, scope):
    child = PpmakeScope(session)
    child.parent = scope
    scope.define_variable('X', 'old')
    assert child.set_variable('X', 'new')
    assert scope.get_variable('X') == 'new'
    assert not child.set_variable('NEVER_DEFINED', 'value')


def test_set_variable_from_environment_defines_at_the_bottom(session):
    caller = PpmakeScope(session)
    with session.pushed_scope(PpmakeScope(session)):
        assert caller.set_variable('PPMAKE_TEST_ENV', 'overridden')
    assert session.bottom_scope is session.global_scope
    assert session.global_scope.get_variable('PPMAKE_TEST_ENV') == 'overridden'
    assert PpmakeScope(session).get_variable('PPMAKE_TEST_ENV') == 'overridden'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


def test_tokenize_params_keeps_nested_references(scope):
    assert scope.tokenize_params('a, $[X], c', expand=False) == ['a', '$[X]', 'c']
    assert scope.tokenize_params('x, $[f a,b], y', expand=False) == \
        ['x', '$[f a,b]', 'y']


def test_tokenize_params_expands_on_request(scope):
    scope.define_variable('X', 'one, two')
    assert scope.tokenize_params(' a ,$[X] ', expand=True) == ['a', 'one, two']


def test_tokenize_params_trailing_comma(scope):
    assert scope.tokenize_params('a,b,', expand=False) == ['a', 'b', '']
    assert scope.tokenize_params(',b', expand=False) == ['', 'b']
    assert scope.tokenize_params('', expand=False) == []


def test_define_formals_binds_the_parameters(scope, caplog):
    scope.define_variable('WHO', 'world')
    scope.define_formals('greet', ['greeting', 'name'], 'hello, $[WHO]')
    assert scope.get_variable('greeting') == 'hello'
    assert scope.get_variable('name') == 'world'
    with caplog.at_level(logging.WARNING):
        scope.define_formals('greet', ['greeting', 'name'], 'hi')
    assert scope.get_variable('name') == ''
    assert 'not all parameters defined for greet' in caplog.text


def test_function_shadows_variable(session, scope):
    scope.define_variable('F', 'variable')
    session.define_func('F', PpmakeSubroutine((), ('from function',)))
    assert scope.get_variable('F') == 'from function'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


def test_patsubst(scope):
    scope.define_variable('SOURCES', 'a.c b.h c.c')
    assert scope.expand_string('$[patsubst %.c,%.o,$[SOURCES]]') == 'a.o b.h c.o'
    assert scope.expand_string(
        '$[patsubst %.c %.cxx,%.o,%.h,,a.c b.cxx c.h d.txt]') == 'a.o b.o  d.txt'


def test_patsubst_requires_wildcards_in_from_patterns(scope, caplog):
    with caplog.at_level(logging.WARNING):
        assert scope.expand_string('$[patsubst a.c,%.o,a.c]') == ''
    assert 'must include %' in caplog.text


def test_inline_patsubst(scope):
    scope.define_variable('SOURCES', 'a.c b.h c.c')
    assert scope.expand_string('$[SOURCES:%.c=%.o]') == 'a.o b.h c.o'


def test_subst(scope):
    assert scope.expand_string('$[subst a,x,b,y,a b c a]') == 'x y c x'


def test_filter_and_filter_out(scope):
    scope.define_variable('FILES', 'a.c b.h c.cxx Makefile')
    assert scope.expand_string('$[filter %.c %.cxx,$[FILES]]') == 'a.c c.cxx'
    assert scope.expand_string('$[filter_out %.c %.cxx,$[FILES]]') == 'b.h Makefile'
    assert scope.expand_string('$[filter-out Makefile,$[FILES]]') == 'a.c b.h c.cxx'


def test_sort_unique_and_firstword(scope):
    assert scope.expand_string('$[sort b a c b]') == 'a b c'
    assert scope.expand_string('$[unique b a c b]') == 'b a c'
    assert scope.expand_string('$[firstword  x y z]') == 'x'


def test_conditionals(scope):
    scope.define_variable('YES', '1')
    assert scope.expand_string('$[if $[YES],yes,no]') == 'yes'
    assert scope.expand_string('$[if $[NO],yes,no]') == 'no'
    assert scope.expand_string('$[if $[NO],yes]') == ''
    assert scope.expand_string('$[eq a,a]') == '1'
    assert scope.expand_string('$[eq a,b]') == ''
    assert scope.expand_string('$[ne a,b]') == '1'
    assert scope.expand_string('$[not $[NO]]') == '1'
    assert scope.expand_string('$[not $[YES]]') == ''
    assert scope.expand_string('$[or $[NO],b,c]') == 'b'
    assert scope.expand_string('$[and a,b]') == 'b'
    assert scope.expand_string('$[and a,$[NO]]') == ''


def test_case_conversion(scope):
    assert scope.expand_string('$[upcase abc]') == 'ABC'
    assert scope.expand_string('$[downcase ABC]') == 'abc'


def test_standardize(scope):
    assert scope.expand_string('$[standardize /a/./b/../c//d]') == '/a/c/d'
    assert scope.expand_string('$[standardize ../x/../../y]') == '../../y'
    assert scope.expand_string('$[standardize a/b/]') == 'a/b'


def test_cdefine(scope):
    scope.define_variable('HAVE_ZLIB', ' 1 ')
    assert scope.expand_string('$[cdefine HAVE_ZLIB]') == '#define HAVE_ZLIB 1'
    assert scope.expand_string('$[cdefine HAVE_PNG]') == '#undef HAVE_PNG'


def test_wildcard_isdir_and_isfile(scope, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ('b.c', 'a.c', 'x.h'):
        (tmp_path / name).write_text('')
    (tmp_path / 'sub').mkdir()
    assert scope.expand_string('$[wildcard *.c missing.c x.h]') == 'a.c b.c x.h'
    assert scope.expand_string('$[isdir su*]') == 'sub'
    assert scope.expand_string('$[isdir a.c]') == ''
    assert scope.expand_string('$[isfile a.c]') == 'a.c'
    assert scope.expand_string('$[isfile sub]') == ''


def test_shell_collapses_whitespace(scope):
    assert scope.expand_string('$[shell printf "a\\n  b\\n"]') == 'a b'


def test_bintest_searches_path(tmp_path):
    tool = tmp_path / 'mytool'
    tool.write_text('#!/bin/sh\n')
    tool.chmod(tool.stat().st_mode | stat.S_IEXEC)
    session = PpmakeSession(environ={'PATH': str(tmp_path)})
    scope = PpmakeScope(session)
    assert scope.expand_string('$[bintest mytool]') == os.path.join(tmp_path, 'mytool')
    assert scope.expand_string('$[bintest nosuchtool]') == ''
    assert scope.expand_string(f'$[bintest {tool}]') == str(tool)


def test_libtest_searches_directories(tmp_path):
    (tmp_path / 'libppmakefoo.so').write_text('')
    session = PpmakeSession(environ={})
    scope = PpmakeScope(session)
    assert scope.expand_string(f'$[libtest {tmp_path},ppmakefoo]') == \
        os.path.join(tmp_path, 'libppmakefoo.so')
    assert scope.expand_string(f'$[libtest {tmp_path},ppmakebar]') == ''


def test_undefined_map_variable_call_is_an_error(scope):
    with pytest.raises(PpmakeRuntimeError):
        scope.expand_string('$[nosuchmap a,b]')


def test_self_reference_through_a_builtin_terminates(scope, caplog):
    scope.define_variable('A', '$[sort $[B]]')
    scope.define_variable('B', '$[A] x')
    with caplog.at_level(logging.WARNING):
        assert scope.expand_string('$[A]') == 'x'
    assert 'cyclical expansion of A' in caplog.text


def test_same_name_in_another_scope_is_not_a_cycle(session, named_scopes):
    named_scopes.set_current('')
    lib = named_scopes.make_scope('lib')
    lib.define_variable('LIBS', 'm')
    scope = PpmakeScope(session, named_scopes)
    scope.define_variable('LIBS', '$[LIBS(lib)] dl')
    assert scope.expand_string('$[LIBS]') == 'm dl'


def test_self_reference_through_a_scope_qualifier_terminates(named_scopes,
                                                            caplog):
    named_scopes.set_current('')
    lib = named_scopes.make_scope('lib')
    lib.define_variable('LIBS', '$[LIBS(lib)] m')
    with caplog.at_level(logging.WARNING):
        assert lib.expand_string('$[LIBS]') == ' m'
    assert 'cyclical expansion of LIBS' in caplog.text
