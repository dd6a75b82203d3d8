# -*- coding: utf-8 -*-

import io
import os
import logging

import pytest

from ppmake import (
    PpmakeCommandFile, PpmakeSyntaxError, PpmakeRuntimeError)


def test_text_lines_are_expanded(run, scope):
    scope.define_variable('NAME', 'ppmake')
    assert run('hello $[NAME]\n') == 'hello ppmake\n'


def test_comments_are_stripped(run):
    text = '''\
        // whole line comment
        kept // trailing comment
        url http://example.com
        '''
    assert run(text) == 'kept\nurl http://example.com\n'


def test_hash_without_letter_is_text(run):
    assert run('# not a directive\n#123\n') == '# not a directive\n#123\n'


def test_invalid_command_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='invalid command'):
        run('#bogus\n')


def test_if_empty_condition_takes_else(run):
    text = '''\
        #if $[NOTHING]
        body
        #else
        alt-body
        #endif
        '''
    assert run(text) == 'alt-body\n'


def test_elif_chain(run):
    text = '''\
        #define X 2
        #if $[eq $[X],1]
        one
        #elif $[eq $[X],2]
        two
        #elif $[X]
        also true but skipped
        #else
        three
        #endif
        '''
    assert run(text) == 'two\n'


def test_nested_if_inside_failed_if(run):
    text = '''\
        #if
        #if 1
        hidden
        #else
        hidden too
        #endif
        #else
        shown
        #endif
        '''
    assert run(text) == 'shown\n'


def test_conditional_misuse_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='#elif encountered after #else'):
        run('#if 1\n#else\n#elif 1\n#endif\n')
    with pytest.raises(PpmakeSyntaxError, match='#endif encountered without #if'):
        run('#endif\n')
    with pytest.raises(PpmakeSyntaxError, match='unclosed #if'):
        run('#if 1\n')


def test_continuation_lines(run):
    text = '''\
        #define X a \\
          b
        $[X]
        '''
    assert run(text).split() == ['a', 'b']


def test_continuation_at_end_of_file_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='continuation lines'):
        run('#define X a \\\n')


def test_define_defer_and_set(run):
    text = '''\
        #define A x
        #defer B $[A] y
        #define C $[A] y
        #set A z
        $[B]
        $[C]
        '''
    assert run(text) == 'z y\nx y\n'


def test_defer_expands_self_reference(run):
    text = '''\
        #define LIBS a
        #defer LIBS $[LIBS] b $[EXTRA]
        #define EXTRA c
        $[LIBS]
        '''
    assert run(text) == 'a b c\n'


def test_set_undefined_variable_is_an_error(run):
    with pytest.raises(PpmakeRuntimeError, match='undefined variable'):
        run('#set NEVER_DEFINED x\n')


def test_foreach(run):
    text = '''\
        #foreach f a b c
        file $[f]
        #end f
        '''
    assert run(text) == 'file a\nfile b\nfile c\n'


def test_nested_foreach(run):
    text = '''\
        #foreach a x y
        #foreach b 1 2
        $[a]$[b]
        #end b
        #end a
        '''
    assert run(text) == 'x1\nx2\ny1\ny2\n'


def test_mismatched_end_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='#end y encountered'):
        run('#foreach x a\n#end y\n')
    with pytest.raises(PpmakeSyntaxError, match='unmatched #end'):
        run('#end x\n')


def test_unclosed_begin_names_the_scope(run):
    with pytest.raises(PpmakeSyntaxError, match='foo'):
        run('#begin foo\ntext\n')


def test_unclosed_block_in_file_reports_the_file(scope, tmp_path):
    source = tmp_path / 'Sources.pp'
    source.write_text('#begin foo\n#define X 1\n')
    with pytest.raises(PpmakeSyntaxError) as error_info:
        PpmakeCommandFile(scope).read_file(str(source))
    assert error_info.value.file_path == str(source)
    assert 'unclosed begin foo' in str(error_info.value)


def test_errors_are_located(scope, tmp_path):
    source = tmp_path / 'Sources.pp'
    source.write_text('ok\n#bogus\n')
    with pytest.raises(PpmakeSyntaxError) as error_info:
        PpmakeCommandFile(scope).read_file(str(source))
    assert str(error_info.value).startswith(f'{source}:2: ')


def test_error_directive(run):
    with pytest.raises(PpmakeRuntimeError, match='zlib is required'):
        run('#define LIB zlib\n#error $[LIB] is required\n')


def test_defsub_and_call(run):
    text = '''\
        #defsub greet name, greeting
        $[greeting] $[name]
        #end greet
        #call greet world, hello
        #call greet ppmake, bye
        '''
    assert run(text) == 'hello world\nbye ppmake\n'


def test_call_does_not_leak_formals(run):
    text = '''\
        #defsub show value
        [$[value]]
        #end show
        #call show inside
        [$[value]]
        '''
    assert run(text) == '[inside]\n[]\n'


def test_call_undefined_subroutine_is_an_error(run):
    with pytest.raises(PpmakeRuntimeError, match='undefined subroutine'):
        run('#call nothing a, b\n')


def test_defun(run):
    text = '''\
        #defun double x
        $[x]$[x]
        #end double
        [$[double ab]]
        '''
    assert run(text) == '[abab]\n'


def test_defsub_inside_block_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='may not appear'):
        run('#foreach x a\n#defsub f\n#end f\n#end x\n')


def test_invalid_formal_name_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError, match='invalid formal'):
        run('#defsub f $[x]\n#end f\n')


def test_begin_and_forscopes(run):
    text = '''\
        #begin lib
        #define NAME one
        #end lib
        #begin lib
        #define NAME two
        #end lib
        #forscopes lib
        $[NAME]
        #end lib
        $[NAME(lib)]
        '''
    assert run(text) == 'one\ntwo\none two\n'


def test_begin_scope_sees_enclosing_variables(run):
    text = '''\
        #define PREFIX lib
        #begin target
        #define NAME $[PREFIX]foo
        #end target
        #forscopes target
        $[NAME]
        #end target
        '''
    assert run(text) == 'libfoo\n'


def test_begin_global(run, session):
    run('#begin global\n#define SHARED yes\n#end global\n')
    assert session.global_scope.get_variable('SHARED') == 'yes'


def test_scope_name_with_slash_is_an_error(run):
    with pytest.raises(PpmakeSyntaxError):
        run('#begin dir/name\n#end dir/name\n')


_SCOPES = '''\
        #begin a
        #define KEYS ka
        #define NAME alpha
        #end a
        #begin b
        #define KEYS kb
        #define NAME beta
        #end b
        '''


def test_map_variable(run):
    text = _SCOPES + '''\
        #map M KEYS(a b)
        $[M]
        $[M $[NAME], kb ka missing]
        '''
    assert run(text) == 'ka kb\nbeta alpha\n'


def test_addmap_and_unmapped(run):
    text = _SCOPES + '''\
        #map M KEYS(a b)
        #define NAME top
        #addmap M newkey
        $[M $[NAME], newkey]
        $[unmapped M, newkey other]
        $[M]
        '''
    assert run(text) == 'top\nother\nka kb newkey\n'


def test_addmap_to_undefined_map_is_an_error(run):
    with pytest.raises(PpmakeRuntimeError, match='undefined map variable'):
        run('#addmap NOMAP key\n')


def test_formap(run):
    text = _SCOPES + '''\
        #map M KEYS(a b)
        #formap k M
        $[k]: $[NAME]
        #end k
        '''
    assert run(text) == 'ka: alpha\nkb: beta\n'


def test_closure(run):
    text = '''\
        #begin node
        #define NAME a
        #define DEPS b
        #end node
        #begin node
        #define NAME b
        #define DEPS c
        #end node
        #begin node
        #define NAME c
        #define DEPS
        #end node
        #map NODES NAME(node)
        #define DEPS a
        $[closure NODES,$[DEPS]]
        '''
    assert run(text) == 'a b c\n'


def test_include_and_sinclude(run, tmp_path):
    included = tmp_path / 'inc.pp'
    included.write_text('#define FROM_INCLUDE yes\nincluded from $[THISFILENAME]\n')
    text = f'''\
        #include "{included}"
        $[FROM_INCLUDE]
        #sinclude {tmp_path}/missing.pp
        [$[THISFILENAME]]
        '''
    assert run(text) == f'included from {included}\nyes\n[]\n'


def test_include_missing_file_is_an_error(run, tmp_path):
    with pytest.raises(PpmakeRuntimeError, match='unable to open'):
        run(f'#include {tmp_path}/missing.pp\n')


def test_print_goes_to_stderr(run, capsys):
    assert run('#print hello $[upcase x]\n') == ''
    assert capsys.readouterr().err == 'hello X\n'


def test_collapse_format_suppresses_repeated_blank_lines(run):
    assert run('\n\na\n\n\n\nb\n\n') == 'a\n\nb\n\n'


def test_straight_format_keeps_blank_lines(run):
    assert run('#format straight\na\n\n\nb\n') == 'a\n\n\nb\n'


def test_invalid_format_is_a_warning(run, caplog):
    with caplog.at_level(logging.WARNING):
        assert run('#format fancy\na\n') == 'a\n'
    assert 'invalid write format' in caplog.text


def test_makefile_format_folds_long_lines(run):
    files = ' '.join(f'file{index:02}.c' for index in range(12))
    text = f'#format makefile\nshort: line\nSOURCES = {files}\n'
    assert run(text) == (
        'short: line\n'
        'SOURCES = \\\n'
        '    file00.c file01.c file02.c file03.c file04.c file05.c file06.c \\\n'
        '    file07.c file08.c file09.c file10.c file11.c\n')


def test_output_writes_only_when_changed(scope, run, tmp_path):
    scope.define_variable('DIRPREFIX', f'{tmp_path}/')
    target = tmp_path / 'out.txt'
    text = '#output out.txt\nhello $[WHO]\n#end out.txt\n'

    scope.define_variable('WHO', 'world')
    assert run(text) == ''
    assert target.read_text() == 'hello world\n'

    os.utime(target, (1000000, 1000000))
    run(text)
    assert target.stat().st_mtime == 1000000
    assert target.read_text() == 'hello world\n'

    scope.define_variable('WHO', 'again')
    run(text)
    assert target.read_text() == 'hello again\n'
    assert target.stat().st_mtime != 1000000
    assert sorted(path.name for path in tmp_path.iterdir()) == ['out.txt']


def test_output_to_empty_name_is_an_error(run):
    with pytest.raises(PpmakeRuntimeError, match='empty filename'):
        run('#output $[NOTHING]\n#end\n')


def test_self_reference_through_a_function_terminates(run, caplog):
    text = '''\
        #defun f
        $[A]
        #end f
        #defer A $[f] y
        $[A]
        '''
    with caplog.at_level(logging.WARNING):
        assert run(text) == ' y\n'
    assert 'cyclical expansion of A' in caplog.text


def test_runaway_function_recursion_is_an_error(run):
    text = '''\
        #defun f x
        $[f $[x]]
        #end f
        $[f a]
        '''
    with pytest.raises(PpmakeRuntimeError, match='runaway recursion in function `f`'):
        run(text)


def test_file_with_undecodable_bytes_is_read(scope, tmp_path):
    source = tmp_path / 'Sources.pp'
    source.write_bytes(b'// \xa9 Copyright\nhello\nbyte \xa9 kept\n')
    output = io.StringIO()
    command_file = PpmakeCommandFile(scope)
    command_file.set_output(output)
    command_file.read_file(str(source))
    hello, byte_line = output.getvalue().splitlines()
    assert hello == 'hello'
    assert byte_line.startswith('byte ') and byte_line.endswith(' kept')


def test_failed_output_block_leaves_no_staged_file(scope, tmp_path):
    scope.define_variable('DIRPREFIX', f'{tmp_path}/')
    target = tmp_path / 'out.txt'
    target.write_text('old\n')
    source = tmp_path / 'Template.pp'
    source.write_text('#output out.txt\nnew\n#error boom\n#end out.txt\n')
    command_file = PpmakeCommandFile(scope)
    with pytest.raises(PpmakeRuntimeError, match='boom'):
        command_file.read_file(str(source))
    assert sorted(path.name for path in tmp_path.iterdir()) == \
        ['Template.pp', 'out.txt']
    assert target.read_text() == 'old\n'
