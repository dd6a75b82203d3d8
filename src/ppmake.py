#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# pylint: disable=too-many-lines, protected-access

# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=                                                       =-=-=-=-= #
# =-=-=-=-=                      p p m a k e                      =-=-=-=-= #
# =-=-=-=-=                                                       =-=-=-=-= #
# =-=-=-=-=        macro-expanding build script generator         =-=-=-=-= #
# =-=-=-=-=                                                       =-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=                                                       =-=-=-=-= #
# =-=                                                                   =-= #
# =                                                                       = #
#                                                                           #
# Copyright (C) 2021 Oleg Butakov                                           #
#                                                                           #
# Permission is hereby granted, free of charge, to any person obtaining a   #
# copy of this software and associated documentation files                  #
# (the "Software"), to deal in the Software without restriction, including  #
# without limitation the rights  to use, copy, modify, merge, publish,      #
# distribute, sublicense, and/or sell copies of the Software, and to permit #
# persons to whom the Software is furnished to do so, subject to the        #
# following conditions:                                                     #
#                                                                           #
# The above copyright notice and this permission notice shall be included   #
# in all copies or substantial portions of the Software.                    #
#                                                                           #
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS   #
# OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF                #
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT.    #
# IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY      #
# CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF CONTRACT,      #
# TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE         #
# SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.                    #
#                                                                           #
# =                                                                       = #
# =-=                                                                   =-= #
# =-=-=-=-=                                                       =-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


"""
Ppmake macro language: variable expansion and the command interpreter.
"""

import io
import os
import sys
import glob
import shutil
import filecmp
import logging
import argparse
import platform
import tempfile
import subprocess
from enum import Enum
from contextlib import contextmanager
from dataclasses import dataclass, field

from typing import (
    final, TYPE_CHECKING,
    Iterable, Iterator, List, Set, Dict, Tuple, Mapping,
    Final, Optional, Callable, TextIO)

import coloredlogs

if TYPE_CHECKING:
    from ppmaketree import PpmakeDirectory

_LOGGER: Final = logging.getLogger(__name__)

PPMAKE_VERSION: Final = '1.9'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                Ppmake Helper Routines                 =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


_VARIABLE_OPEN: Final = '$['
_VARIABLE_CLOSE: Final = ']'
_PATTERN_WILDCARD: Final = '%'
_BEGIN_COMMENT: Final = '//'
_PARAMETER_SEPARATOR: Final = ','
_OPEN_NESTED: Final = '('
_CLOSE_NESTED: Final = ')'
_PATSUBST_SEPARATOR: Final = ':'
_PATSUBST_DELIMITER: Final = '='
_INVALID_FORMAL_CHARS: Final = frozenset(' \t\n$[],')

SCOPE_DIRNAME_SEPARATOR: Final = '/'
SCOPE_DIRNAME_WILDCARD: Final = '*'
SCOPE_DIRNAME_CURRENT: Final = '.'


def tokenize_whitespace(string: str) -> List[str]:
    """Split the string into the whitespace-separated words."""
    return string.split()


def _repaste(words: Iterable[str]) -> str:
    """Join the words back with single spaces."""
    return ' '.join(words)


def _contains_whitespace(string: str) -> bool:
    return any(char.isspace() for char in string)


def _split_first_word(string: str) -> Tuple[str, str]:
    """Split the string into the first word and the remainder."""
    words = string.split(maxsplit=1)
    if not words:
        return '', ''
    if len(words) == 1:
        return words[0], ''
    return words[0], words[1]


def _find_comment(line: str) -> int:
    """Find the comment start: a `//` at the line start or after whitespace."""
    index = line.find(_BEGIN_COMMENT)
    while index > 0 and not line[index - 1].isspace():
        index = line.find(_BEGIN_COMMENT, index + len(_BEGIN_COMMENT))
    return index


def _scan_variable_reference(string: str, start: int) -> Tuple[str, int]:
    """Scan the balanced `$[...]` at the start index without expanding it."""
    index = start + len(_VARIABLE_OPEN)
    while index < len(string) and string[index] != _VARIABLE_CLOSE:
        if string.startswith(_VARIABLE_OPEN, index):
            _, index = _scan_variable_reference(string, index)
        else:
            index += 1
    if index >= len(string):
        message = f'unclosed variable reference `{string[start:]}`'
        raise PpmakeSyntaxError(message)
    index += len(_VARIABLE_CLOSE)
    return string[start:index], index


def _find_searchpath(directories: Iterable[str], filename: str) -> str:
    """Find the first directory holding the file, return the file path."""
    for directory in directories:
        if directory:
            file_path = os.path.join(directory, filename)
            if os.path.exists(file_path):
                return file_path
    return ''


def _glob_string(string: str) -> List[str]:
    """Glob every word of the string, matches of each word are sorted."""
    results: List[str] = []
    for word in tokenize_whitespace(string):
        results += sorted(glob.glob(word))
    return results


def _is_windows() -> bool:
    return sys.platform == 'win32'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=            Ppmake Exceptions and Messages             =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


class PpmakeError(Exception):
    """Ppmake processing error."""

    def __init__(self,
                 message: str,
                 file_path: Optional[str] = None,
                 line_number: Optional[int] = None) -> None:
        super().__init__()
        self.message: str = message
        self.file_path: Optional[str] = file_path
        self.line_number: Optional[int] = line_number

    def __str__(self) -> str:
        if self.file_path is None:
            return self.message
        if self.line_number is None:
            return f'{self.file_path}: {self.message}'
        return f'{self.file_path}:{self.line_number}: {self.message}'

    def locate(self, file_path: str, line_number: Optional[int]) -> None:
        """Attach the location, unless the error already has one."""
        if self.file_path is None:
            self.file_path = file_path
            self.line_number = line_number


@final
class PpmakeSyntaxError(PpmakeError):
    """Malformed directive, reference or pattern."""


class PpmakeRuntimeError(PpmakeError):
    """Error raised while executing the directives."""


@final
class PpmakeDependencyCycleError(PpmakeRuntimeError):
    """Cycle in the inter-directory dependencies."""

    def __init__(self, dirname: str, depends_on: str) -> None:
        self.edges: List[Tuple[str, str]] = [(dirname, depends_on)]
        super().__init__(self._describe())

    def add_edge(self, dirname: str, depends_on: str) -> None:
        """Record one more edge of the cycle while unwinding."""
        self.edges.append((dirname, depends_on))
        self.message = self._describe()

    def _describe(self) -> str:
        edges = ', '.join(f'{dirname} depends on {depends_on}'
                          for dirname, depends_on in self.edges)
        return f'cycle detected in inter-directory dependencies: {edges}'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                     Ppmake Options                    =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


@dataclass
class PpmakeOptions:
    """Preprocessor options."""
    platform: str = field(default_factory=platform.system)
    config_file: Optional[str] = None
    package_filename: str = 'Package.pp'
    source_filename: str = 'Sources.pp'
    defines: List[str] = field(default_factory=list)
    dependency_files: List[str] = field(default_factory=list)
    dirnames: List[str] = field(default_factory=list)
    report_depends: bool = False
    report_needs: bool = False


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                Ppmake Filename Patterns               =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


@final
class PpmakeFilenamePattern:
    """Filename pattern with at most one `%` wildcard, like `%.cxx`."""

    def __init__(self, pattern: str) -> None:
        if pattern.count(_PATTERN_WILDCARD) > 1:
            message = f'pattern `{pattern}` has more than one `%` wildcard'
            raise PpmakeSyntaxError(message)
        self._pattern: str = pattern
        self._prefix, wildcard, self._suffix = pattern.partition(_PATTERN_WILDCARD)
        self._has_wildcard: bool = wildcard != ''

    def __str__(self) -> str:
        return self._pattern

    @property
    def has_wildcard(self) -> bool:
        return self._has_wildcard

    def matches(self, word: str) -> bool:
        if not self._has_wildcard:
            return word == self._pattern
        return len(word) >= len(self._prefix) + len(self._suffix) and \
            word.startswith(self._prefix) and word.endswith(self._suffix)

    def extract_body(self, word: str) -> str:
        """Extract the part of a matching word the wildcard stands for."""
        return word[len(self._prefix):len(word) - len(self._suffix)]

    def transform(self, word: str,
                  transform_from: 'PpmakeFilenamePattern') -> str:
        """
        Rewrite the word matching the `from` pattern into this pattern,
        substituting the wildcard body. Words that do not match are
        returned unchanged, a pattern without wildcard is returned as is.
        """
        if not self._has_wildcard:
            return self._pattern
        if not transform_from.matches(word):
            return word
        body = transform_from.extract_body(word)
        return f'{self._prefix}{body}{self._suffix}'


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=            Ppmake Subroutines and Session             =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


@final
@dataclass(frozen=True)
class PpmakeSubroutine:
    """Body captured by `#defsub` or `#defun`."""
    formals: Tuple[str, ...]
    lines: Tuple[str, ...]


class PpmakeSession:
    """
    State shared by every scope and interpreter of one run:
    the subroutine and function tables, the dynamic scope stack,
    the directory currently being generated and the environment.
    """

    def __init__(self,
                 options: Optional[PpmakeOptions] = None,
                 environ: Optional[Mapping[str, str]] = None) -> None:
        self.options: PpmakeOptions = \
            options if options is not None else PpmakeOptions()
        self.environ: Mapping[str, str] = \
            environ if environ is not None else os.environ
        self.current_output_directory: Optional['PpmakeDirectory'] = None
        self._subroutines: Dict[str, PpmakeSubroutine] = {}
        self._functions: Dict[str, PpmakeSubroutine] = {}
        self._scope_stack: List['PpmakeScope'] = []
        self._expanding: Set[Tuple[object, str]] = set()
        self.global_scope: PpmakeScope = PpmakeScope(self)
        self.push_scope(self.global_scope)

    def define_sub(self, name: str, subroutine: PpmakeSubroutine) -> None:
        self._subroutines[name] = subroutine

    def get_sub(self, name: str) -> Optional[PpmakeSubroutine]:
        return self._subroutines.get(name)

    def define_func(self, name: str, function: PpmakeSubroutine) -> None:
        self._functions[name] = function

    def get_func(self, name: str) -> Optional[PpmakeSubroutine]:
        return self._functions.get(name)

    @property
    def scope_stack(self) -> List['PpmakeScope']:
        return self._scope_stack

    @property
    def bottom_scope(self) -> 'PpmakeScope':
        return self._scope_stack[0]

    def push_scope(self, scope: 'PpmakeScope') -> None:
        self._scope_stack.append(scope)

    def pop_scope(self) -> 'PpmakeScope':
        return self._scope_stack.pop()

    @contextmanager
    def pushed_scope(self, scope: 'PpmakeScope') -> Iterator[None]:
        """Keep the scope on the dynamic stack for the duration of the block."""
        self.push_scope(scope)
        try:
            yield
        finally:
            self.pop_scope()

    def is_expanding(self, owner: object, name: str) -> bool:
        return (owner, name) in self._expanding

    @contextmanager
    def expanding_variable(self, owner: object, name: str) -> Iterator[None]:
        """
        Mark the variable as being expanded for the duration of the block.
        The owner is the scope holding the definition, the session itself
        for the user functions, or `None` for the environment.
        """
        self._expanding.add((owner, name))
        try:
            yield
        finally:
            self._expanding.discard((owner, name))


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=          Ppmake Scope and Variable Expansion          =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


PpmakeMapVariable = Dict[str, 'PpmakeScope']


class PpmakeScope:
    """
    Variable environment. Lookups walk the static parent chain first,
    then the dynamic scope stack from the top, then the environment.
    """

    def __init__(self,
                 session: PpmakeSession,
                 named_scopes: Optional['PpmakeNamedScopes'] = None) -> None:
        self.session: PpmakeSession = session
        self.named_scopes: Optional[PpmakeNamedScopes] = named_scopes
        self.parent: Optional[PpmakeScope] = None
        self.directory: Optional['PpmakeDirectory'] = None
        self._variables: Dict[str, str] = {}
        self._map_variables: Dict[str, PpmakeMapVariable] = {}

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def define_variable(self, name: str, value: str) -> None:
        """Define the variable in this scope, shadowing outer definitions."""
        self._variables[name] = value

    def set_variable(self, name: str, value: str) -> bool:
        """
        Change the nearest visible definition of the variable.
        A variable that only exists in the environment is defined in the
        bottom scope of the stack. Return false when nothing was found.
        """
        if self._p_set_variable(name, value):
            return True
        for scope in reversed(self.session.scope_stack):
            if scope._p_set_variable(name, value):
                return True
        if name in self.session.environ:
            stack = self.session.scope_stack
            bottom_scope = stack[0] if stack else self
            bottom_scope.define_variable(name, value)
            return True
        return False

    def _p_set_variable(self, name: str, value: str) -> bool:
        if name in self._variables:
            self._variables[name] = value
            return True
        if self.parent is not None:
            return self.parent._p_set_variable(name, value)
        return False

    def get_variable(self, name: str) -> str:
        """Get the unexpanded value of the variable."""
        function = self.session.get_func(name)
        if function is not None:
            return self._expand_function(name, function, '')
        _, value = self._find_variable(name)
        return value

    def _find_variable(self, name: str) -> Tuple[Optional['PpmakeScope'], str]:
        """Find the variable value and the scope defining it."""
        found = self._p_get_variable(name)
        if found is not None:
            return found
        for scope in reversed(self.session.scope_stack):
            found = scope._p_get_variable(name)
            if found is not None:
                return found
        return None, self.session.environ.get(name, '')

    def _p_get_variable(self, name: str) -> Optional[Tuple['PpmakeScope', str]]:
        if name in self._variables:
            return self, self._variables[name]
        if self.directory is not None:
            if name == 'RELDIR':
                current = self.session.current_output_directory
                if current is not None:
                    return self, current.get_rel_to(self.directory)
            elif name == 'DEPENDS_INDEX':
                return self, str(self.directory.depends_index)
        if self.parent is not None:
            return self.parent._p_get_variable(name)
        return None

    def expand_variable(self, name: str) -> str:
        return self.expand_string(self.get_variable(name))

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def define_map_variable(self,
                            name: str, key_var: str, scope_names: str) -> None:
        """
        Define a map variable: every scope named in the list contributes
        the words of its `key_var` as keys mapping to itself. The plain
        variable of the same name lists all the keys.
        """
        mapping: PpmakeMapVariable = {}
        self._map_variables[name] = mapping
        self.define_variable(name, '')
        if self.named_scopes is None or not key_var:
            return
        keys: List[str] = []
        scopes = self.named_scopes.get_scopes_list(
            tokenize_whitespace(scope_names))
        for scope in scopes:
            scope_keys = tokenize_whitespace(scope.expand_variable(key_var))
            for key in scope_keys:
                mapping[key] = scope
            keys += scope_keys
        self.define_variable(name, _repaste(keys))

    def define_map_variable_from(self, name: str, definition: str) -> None:
        """Define a map variable from the `KEY_VAR(scope names)` text."""
        open_at = definition.find(_OPEN_NESTED)
        if open_at != -1 and definition.endswith(_CLOSE_NESTED):
            key_var = definition[:open_at]
            scope_names = definition[open_at + 1:-1]
            self.define_map_variable(name, key_var, scope_names)
        else:
            self.define_map_variable(name, definition, '')

    def add_to_map_variable(self,
                            name: str, key: str, scope: 'PpmakeScope') -> None:
        mapping = self.find_map_variable(name)
        if mapping is None:
            message = f'attempt to add to undefined map variable `{name}`'
            raise PpmakeRuntimeError(message)
        mapping[key] = scope
        self.set_variable(name, _repaste(sorted(mapping)))

    def find_map_variable(self, name: str) -> Optional[PpmakeMapVariable]:
        """Find the map variable, `None` means there is no such map."""
        mapping = self._p_find_map_variable(name)
        if mapping is not None:
            return mapping
        for scope in reversed(self.session.scope_stack):
            mapping = scope._p_find_map_variable(name)
            if mapping is not None:
                return mapping
        return None

    def _p_find_map_variable(self, name: str) -> Optional[PpmakeMapVariable]:
        mapping = self._map_variables.get(name)
        if mapping is not None:
            return mapping
        if self.parent is not None:
            return self.parent._p_find_map_variable(name)
        return None

    def define_formals(self, subroutine_name: str,
                       formals: Iterable[str], actuals: str) -> None:
        """Bind the formal parameters to the comma-separated actuals."""
        formals = list(formals)
        actual_words = self.tokenize_params(actuals, expand=True)
        if len(actual_words) < len(formals):
            _LOGGER.warning('not all parameters defined for %s: %s',
                            subroutine_name, actuals)
        elif len(actual_words) > len(formals):
            _LOGGER.warning('more parameters defined for %s than actually exist: %s',
                            subroutine_name, actuals)
        for index, formal in enumerate(formals):
            value = actual_words[index] if index < len(actual_words) else ''
            self.define_variable(formal, value)

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def expand_string(self, string: str) -> str:
        """Replace every `$[...]` reference in the string."""
        if _VARIABLE_OPEN not in string:
            return string
        parts: List[str] = []
        index = 0
        while (found := string.find(_VARIABLE_OPEN, index)) != -1:
            parts.append(string[index:found])
            value, index = self._r_expand_variable(string, found)
            parts.append(value)
        parts.append(string[index:])
        return ''.join(parts)

    def expand_self_reference(self, string: str, name: str) -> str:
        """
        Expand only the literal `$[name]` references in the string,
        leaving everything else for a later expansion.
        """
        reference = f'{_VARIABLE_OPEN}{name}{_VARIABLE_CLOSE}'
        parts: List[str] = []
        index = 0
        while (found := string.find(reference, index)) != -1:
            parts.append(string[index:found])
            value, index = self._r_expand_variable(string, found)
            parts.append(value)
        parts.append(string[index:])
        return ''.join(parts)

    def tokenize_params(self, string: str, expand: bool) -> List[str]:
        """
        Split the string on the top-level commas. Commas inside the nested
        references do not separate, the tokens are stripped of the leading
        and trailing whitespace. A trailing comma produces an empty token.
        """
        tokens: List[str] = []
        index = 0
        while index < len(string):
            while index < len(string) and string[index].isspace():
                index += 1
            parts: List[str] = []
            while index < len(string) and string[index] != _PARAMETER_SEPARATOR:
                if string.startswith(_VARIABLE_OPEN, index):
                    if expand:
                        part, index = self._r_expand_variable(string, index)
                    else:
                        part, index = _scan_variable_reference(string, index)
                else:
                    part = string[index]
                    index += 1
                parts.append(part)
            tokens.append(''.join(parts).rstrip())
            if index < len(string):
                # Skip the separator.
                index += 1
                if index == len(string):
                    tokens.append('')
        return tokens

    def _r_expand_variable(self, string: str, start: int) -> Tuple[str, int]:
        """
        Expand the reference starting at the index and return the expansion
        and the index past the reference. A name followed by whitespace is
        a function call, the parameters after the whitespace are scanned
        raw and left for the function to expand.
        """
        parts: List[str] = []
        name_length = 0
        whitespace_at: Optional[int] = None
        nested = False
        index = start + len(_VARIABLE_OPEN)
        while index < len(string) and string[index] != _VARIABLE_CLOSE:
            if string.startswith(_VARIABLE_OPEN, index):
                if whitespace_at is not None:
                    part, index = _scan_variable_reference(string, index)
                else:
                    part, index = self._r_expand_variable(string, index)
            else:
                part = string[index]
                if part == _OPEN_NESTED:
                    nested = True
                elif not nested and whitespace_at is None \
                        and part.isspace() and name_length > 0:
                    whitespace_at = name_length
                index += 1
            parts.append(part)
            name_length += len(part)
        if index >= len(string):
            message = f'unclosed variable reference `{string[start:]}`'
            raise PpmakeSyntaxError(message)
        index += len(_VARIABLE_CLOSE)
        name = ''.join(parts)
        if whitespace_at is not None:
            funcname = name[:whitespace_at].strip()
            params = name[whitespace_at:].lstrip()
            return self._expand_function_call(funcname, params), index
        return self._expand_plain_variable(name), index

    def _expand_function_call(self, funcname: str, params: str) -> str:
        function = self.session.get_func(funcname)
        if function is not None:
            try:
                return self._expand_function(funcname, function, params)
            except RecursionError as error:
                message = f'runaway recursion in function `{funcname}`'
                raise PpmakeRuntimeError(message) from error
        builtin = _BUILTIN_FUNCTIONS.get(funcname)
        if builtin is not None:
            return builtin(self, params)
        return self._expand_map_variable(funcname, params)

    def _expand_plain_variable(self, name: str) -> str:
        name, separator, patsubst = name.partition(_PATSUBST_SEPARATOR)
        open_at = name.find(_OPEN_NESTED)
        if open_at != -1 and name.endswith(_CLOSE_NESTED):
            scope_names = name[open_at + 1:-1]
            result = self.expand_string(
                self._expand_variable_nested(name[:open_at], scope_names))
        else:
            result = self._expand_guarded_variable(name)
        if separator:
            result = self._apply_inline_patsubst(result, patsubst)
        return result

    def _expand_guarded_variable(self, name: str) -> str:
        """
        Expand the variable, unless its definition is already being expanded
        further up, through any chain of references, functions and builtins.
        """
        function = self.session.get_func(name)
        owner: object
        if function is not None:
            owner, value = self.session, ''
        else:
            owner, value = self._find_variable(name)
        if self.session.is_expanding(owner, name):
            _LOGGER.warning('ignoring cyclical expansion of %s', name)
            return ''
        with self.session.expanding_variable(owner, name):
            if function is not None:
                value = self._expand_function(name, function, '')
            return self.expand_string(value)

    def _apply_inline_patsubst(self, result: str, patsubst: str) -> str:
        """Apply `$[name:from=to]` to each word of the expansion."""
        tokens = patsubst.split(_PATSUBST_DELIMITER)
        if len(tokens) != 2:
            _LOGGER.warning('inline patsubst should be of the form '
                            '$[varname:%%.ext=%%.ext2]: %s', patsubst)
            return result
        transform_from = PpmakeFilenamePattern(tokens[0])
        transform_to = PpmakeFilenamePattern(tokens[1])
        if not transform_from.has_wildcard or not transform_to.has_wildcard:
            _LOGGER.warning('the two parameters of inline patsubst '
                            'must both include %%: %s', patsubst)
            return ''
        return _repaste(transform_to.transform(word, transform_from)
                        for word in tokenize_whitespace(result))

    def _expand_variable_nested(self, name: str, scope_names: str) -> str:
        """Expand the variable in every named scope, skip empty results."""
        if self.named_scopes is None:
            return ''
        scopes = self.named_scopes.get_scopes_list(
            tokenize_whitespace(scope_names))
        results = (scope._expand_guarded_variable(name) for scope in scopes)
        return _repaste(result for result in results if result)

    def _expand_map_variable(self, name: str, params: str) -> str:
        """Evaluate `$[map key-expr,keys]` in the scope of every listed key."""
        tokens = self.tokenize_params(params, expand=False)
        if len(tokens) != 2:
            _LOGGER.warning('map variable expansions require two parameters: '
                            '$[%s %s]', name, params)
            return ''
        mapping = self.find_map_variable(name)
        if mapping is None:
            message = f'undefined map variable or function `{name}`'
            raise PpmakeRuntimeError(message)
        results: List[str] = []
        for key in tokenize_whitespace(self.expand_string(tokens[1])):
            scope = mapping.get(key)
            if scope is not None:
                if result := scope.expand_string(tokens[0]):
                    results.append(result)
        return _repaste(results)

    def _expand_function(self, funcname: str,
                         function: PpmakeSubroutine, params: str) -> str:
        """Run the `#defun` body and collapse its output whitespace."""
        output = io.StringIO()
        with self.session.pushed_scope(self):
            nested_scope = PpmakeScope(self.session, self.named_scopes)
            nested_scope.define_formals(funcname, function.formals, params)
            command_file = PpmakeCommandFile(nested_scope)
            command_file.set_output(output)
            command_file.read_lines(function.lines)
        return _repaste(tokenize_whitespace(output.getvalue()))

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _expand_wildcard(self, params: str) -> str:
        return _repaste(_glob_string(self.expand_string(params)))

    def _expand_isdir(self, params: str) -> str:
        results = _glob_string(self.expand_string(params))
        if results and os.path.isdir(results[0]):
            return results[0]
        return ''

    def _expand_isfile(self, params: str) -> str:
        results = _glob_string(self.expand_string(params))
        if results and os.path.isfile(results[0]):
            return results[0]
        return ''

    def _expand_libtest(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) != 2:
            _LOGGER.warning('libtest requires two parameters')
            return ''
        environ = self.session.environ
        directories = tokenize_whitespace(tokens[0])
        if _is_windows():
            if windir := environ.get('WINDIR'):
                directories += [os.path.join(windir, 'System'),
                                os.path.join(windir, 'System32')]
            if lib := environ.get('LIB'):
                directories += lib.split(';')
        if ld_library_path := environ.get('LD_LIBRARY_PATH'):
            directories += ld_library_path.split(':')
        directories += ['/lib', '/usr/lib']
        libnames = tokenize_whitespace(tokens[1])
        if not libnames:
            return ''
        libname = libnames[0]
        if _is_windows():
            if not libname.endswith(('.lib', '.dll')):
                libname += '.lib'
            return _find_searchpath(directories, libname)
        return _find_searchpath(directories, f'lib{libname}.a') or \
            _find_searchpath(directories, f'lib{libname}.so')

    def _expand_bintest(self, params: str) -> str:
        binname = self.expand_string(params).strip()
        if not binname:
            return ''
        if os.path.isabs(binname):
            return binname if os.path.exists(binname) else ''
        path = self.session.environ.get('PATH')
        if path is None:
            return ''
        if _is_windows():
            directories = path.split(';')
            return _find_searchpath(directories, f'{binname}.exe') or \
                _find_searchpath(directories, binname)
        return _find_searchpath(path.split(':'), binname)

    def _expand_shell(self, params: str) -> str:
        command = self.expand_string(params)
        try:
            process = subprocess.run(command, shell=True, check=False,
                                     stdout=subprocess.PIPE, text=True,
                                     errors='replace')
        except OSError as error:
            _LOGGER.warning('unable to run `%s`: %s', command, error)
            return ''
        return _repaste(tokenize_whitespace(process.stdout))

    def _expand_standardize(self, params: str) -> str:
        filename = self.expand_string(params).strip()
        if not filename:
            return ''
        components: List[str] = []
        for component in filename.split('/'):
            if component in ('', '.'):
                continue
            if component == '..' and components and components[-1] != '..':
                components.pop()
            else:
                components.append(component)
        result = '/'.join(components)
        return f'/{result}' if filename.startswith('/') else result

    def _expand_firstword(self, params: str) -> str:
        words = tokenize_whitespace(self.expand_string(params))
        return words[0] if words else ''

    def _expand_patsubst(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) < 3:
            _LOGGER.warning('patsubst requires at least three parameters')
            return ''
        if len(tokens) % 2 != 1:
            _LOGGER.warning('patsubst requires an odd number of parameters')
            return ''
        # Each from-list may hold several patterns sharing one to-pattern.
        rules: List[Tuple[List[PpmakeFilenamePattern], PpmakeFilenamePattern]] = []
        for index in range(0, len(tokens) - 1, 2):
            from_patterns: List[PpmakeFilenamePattern] = []
            for word in tokenize_whitespace(tokens[index]):
                pattern = PpmakeFilenamePattern(word)
                if not pattern.has_wildcard:
                    _LOGGER.warning('all the "from" parameters to patsubst '
                                    'must include %')
                    return ''
                from_patterns.append(pattern)
            rules.append((from_patterns, PpmakeFilenamePattern(tokens[index + 1])))
        results: List[str] = []
        for word in tokenize_whitespace(tokens[-1]):
            result = word
            for from_patterns, to_pattern in rules:
                pattern = next((pattern for pattern in from_patterns
                                if pattern.matches(word)), None)
                if pattern is not None:
                    result = to_pattern.transform(word, pattern)
                    break
            results.append(result)
        return _repaste(results)

    def _expand_subst(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) < 3:
            _LOGGER.warning('subst requires at least three parameters')
            return ''
        if len(tokens) % 2 != 1:
            _LOGGER.warning('subst requires an odd number of parameters')
            return ''
        replacements = [(tokens[index], tokens[index + 1])
                        for index in range(0, len(tokens) - 1, 2)]
        results: List[str] = []
        for word in tokenize_whitespace(tokens[-1]):
            for subst_from, subst_to in replacements:
                if word == subst_from:
                    word = subst_to
                    break
            results.append(word)
        return _repaste(results)

    def _filter_words(self, funcname: str,
                      params: str, keep_matching: bool) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) != 2:
            _LOGGER.warning('%s requires two parameters', funcname)
            return ''
        patterns = [PpmakeFilenamePattern(word)
                    for word in tokenize_whitespace(tokens[0])]
        return _repaste(
            word for word in tokenize_whitespace(tokens[1])
            if any(pattern.matches(word) for pattern in patterns) == keep_matching)

    def _expand_filter(self, params: str) -> str:
        return self._filter_words('filter', params, keep_matching=True)

    def _expand_filter_out(self, params: str) -> str:
        return self._filter_words('filter_out', params, keep_matching=False)

    def _expand_sort(self, params: str) -> str:
        return _repaste(sorted(set(tokenize_whitespace(self.expand_string(params)))))

    def _expand_unique(self, params: str) -> str:
        words = tokenize_whitespace(self.expand_string(params))
        return _repaste(dict.fromkeys(words))

    def _expand_if(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=False)
        if len(tokens) not in (2, 3):
            _LOGGER.warning('if requires two or three parameters')
            return ''
        if self.expand_string(tokens[0]).strip():
            return self.expand_string(tokens[1])
        if len(tokens) == 3:
            return self.expand_string(tokens[2])
        return ''

    def _expand_eq(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) != 2:
            _LOGGER.warning('eq requires two parameters')
            return ''
        return '1' if tokens[0] == tokens[1] else ''

    def _expand_ne(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) != 2:
            _LOGGER.warning('ne requires two parameters')
            return ''
        return '1' if tokens[0] != tokens[1] else ''

    def _expand_not(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=True)
        if len(tokens) != 1:
            _LOGGER.warning('not requires one parameter')
            return ''
        return '' if tokens[0].strip() else '1'

    def _expand_or(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=False)
        for token in tokens:
            if result := self.expand_string(token).strip():
                return result
        return ''

    def _expand_and(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=False)
        result = '1'
        for token in tokens:
            result = self.expand_string(token).strip()
            if not result:
                return ''
        return result

    def _expand_upcase(self, params: str) -> str:
        return self.expand_string(params).upper()

    def _expand_downcase(self, params: str) -> str:
        return self.expand_string(params).lower()

    def _expand_cdefine(self, params: str) -> str:
        name = params.strip()
        value = self.expand_variable(name).strip()
        if value:
            return f'#define {name} {value}'
        return f'#undef {name}'

    def _expand_closure(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=False)
        if len(tokens) not in (2, 3):
            _LOGGER.warning('closure requires two or three parameters')
            return ''
        name = self.expand_string(tokens[0])
        expression = tokens[1]
        close_on = tokens[2] if len(tokens) == 3 else expression
        mapping = self.find_map_variable(name)
        if mapping is None:
            message = f'undefined map variable `{name}` in closure'
            raise PpmakeRuntimeError(message)
        results: List[str] = []
        if result := self.expand_string(expression):
            results.append(result)
        next_passes = [self.expand_string(close_on)]
        visited: Set[str] = set()
        while next_passes:
            for key in tokenize_whitespace(next_passes.pop()):
                if key in visited:
                    continue
                visited.add(key)
                scope = mapping.get(key)
                if scope is not None:
                    if result := scope.expand_string(expression):
                        results.append(result)
                    next_passes.append(scope.expand_string(close_on))
        return _repaste(results)

    def _expand_unmapped(self, params: str) -> str:
        tokens = self.tokenize_params(params, expand=False)
        if len(tokens) != 2:
            _LOGGER.warning('unmapped requires two parameters')
            return ''
        name = self.expand_string(tokens[0])
        mapping = self.find_map_variable(name)
        if mapping is None:
            message = f'undefined map variable `{name}` in unmapped'
            raise PpmakeRuntimeError(message)
        keys = tokenize_whitespace(self.expand_string(tokens[1]))
        return _repaste(key for key in keys if key not in mapping)


_BUILTIN_FUNCTIONS: Final[Dict[str, Callable[[PpmakeScope, str], str]]] = {
    'wildcard': PpmakeScope._expand_wildcard,
    'isdir': PpmakeScope._expand_isdir,
    'isfile': PpmakeScope._expand_isfile,
    'libtest': PpmakeScope._expand_libtest,
    'bintest': PpmakeScope._expand_bintest,
    'shell': PpmakeScope._expand_shell,
    'standardize': PpmakeScope._expand_standardize,
    'firstword': PpmakeScope._expand_firstword,
    'patsubst': PpmakeScope._expand_patsubst,
    'subst': PpmakeScope._expand_subst,
    'filter': PpmakeScope._expand_filter,
    'filter_out': PpmakeScope._expand_filter_out,
    'filter-out': PpmakeScope._expand_filter_out,
    'sort': PpmakeScope._expand_sort,
    'unique': PpmakeScope._expand_unique,
    'if': PpmakeScope._expand_if,
    'eq': PpmakeScope._expand_eq,
    'ne': PpmakeScope._expand_ne,
    'not': PpmakeScope._expand_not,
    'or': PpmakeScope._expand_or,
    'and': PpmakeScope._expand_and,
    'upcase': PpmakeScope._expand_upcase,
    'downcase': PpmakeScope._expand_downcase,
    'cdefine': PpmakeScope._expand_cdefine,
    'closure': PpmakeScope._expand_closure,
    'unmapped': PpmakeScope._expand_unmapped,
}


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                  Ppmake Named Scopes                  =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


class PpmakeNamedScopes:
    """
    Registry of the scopes opened with `#begin`, grouped by the directory
    they were opened in. Names are looked up as `name`, `dir/name`,
    `./name` or `*/name`.
    """

    def __init__(self, session: PpmakeSession) -> None:
        self._session: PpmakeSession = session
        self._directories: Dict[str, Dict[str, List[PpmakeScope]]] = {}
        self._current: str = ''
        self._current_directory: Optional['PpmakeDirectory'] = None

    @property
    def current(self) -> str:
        return self._current

    def set_current(self, dirname: str,
                    directory: Optional['PpmakeDirectory'] = None) -> None:
        self._current = dirname
        self._current_directory = directory

    def make_scope(self, name: str) -> PpmakeScope:
        """Create the scope and register it under the current directory."""
        scope = PpmakeScope(self._session, self)
        scope.directory = self._current_directory
        self._directories.setdefault(self._current, {}) \
            .setdefault(name, []).append(scope)
        return scope

    def get_scopes(self, name: str) -> List[PpmakeScope]:
        dirname, separator, scope_name = name.partition(SCOPE_DIRNAME_SEPARATOR)
        if not separator:
            dirname, scope_name = SCOPE_DIRNAME_CURRENT, name
        if dirname == SCOPE_DIRNAME_CURRENT:
            dirname = self._current
        if dirname == SCOPE_DIRNAME_WILDCARD:
            scopes: List[PpmakeScope] = []
            for named in self._directories.values():
                scopes += named.get(scope_name, [])
            return scopes
        return list(self._directories.get(dirname, {}).get(scope_name, []))

    def get_scopes_list(self, names: Iterable[str]) -> List[PpmakeScope]:
        scopes: List[PpmakeScope] = []
        for name in names:
            scopes += self.get_scopes(name)
        return scopes

    @staticmethod
    def sort_by_dependency(scopes: Iterable[PpmakeScope]) -> List[PpmakeScope]:
        """
        Order the scopes so that scopes of the directories with lower
        dependency index come first, ties are broken by the directory
        name, then by the original order.
        """
        def _dependency_key(scope: PpmakeScope) -> Tuple[int, str]:
            directory = scope.directory
            if directory is None:
                return 0, ''
            return directory.depends_index, directory.dirname
        return sorted(scopes, key=_dependency_key)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                  Ppmake Output Writer                 =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


class PpmakeWriteFormat(Enum):
    STRAIGHT = 'straight'
    COLLAPSE = 'collapse'
    MAKEFILE = 'makefile'


_MAKEFILE_COLUMN: Final = 72


class PpmakeWriter:
    """Output sink that formats the expanded lines."""

    def __init__(self,
                 out: Optional[TextIO] = None,
                 line_format: PpmakeWriteFormat = PpmakeWriteFormat.COLLAPSE) -> None:
        self.out: TextIO = out if out is not None else sys.stdout
        self.format: PpmakeWriteFormat = line_format
        self._last_blank: bool = True

    def copy(self, out: TextIO) -> 'PpmakeWriter':
        writer = PpmakeWriter(out, self.format)
        writer._last_blank = self._last_blank
        return writer

    def write_line(self, line: str) -> None:
        if self.format is PpmakeWriteFormat.STRAIGHT:
            self.out.write(f'{line}\n')
        elif self.format is PpmakeWriteFormat.COLLAPSE:
            self._write_collapsed(line)
        else:
            self._write_makefile(line)

    def _write_collapsed(self, line: str) -> None:
        if not line:
            if not self._last_blank:
                self.out.write('\n')
            self._last_blank = True
        else:
            self.out.write(f'{line}\n')
            self._last_blank = False

    def _write_makefile(self, line: str) -> None:
        """
        Fold the long variable assignments and rules, like
        `SOURCES = a.c b.c ...`, with the backslash continuations.
        """
        if len(line) <= _MAKEFILE_COLUMN:
            self._write_collapsed(line)
            return
        self._last_blank = False
        words = tokenize_whitespace(line)
        if len(words) > 2 and words[1] in ('=', ':'):
            self.out.write(f'{words[0]} {words[1]}')
            column = 80
            for word in words[2:]:
                column += len(word) + 1
                if column > _MAKEFILE_COLUMN:
                    self.out.write(' \\\n   ')
                    column = 4 + len(word)
                self.out.write(f' {word}')
            self.out.write('\n')
        else:
            self.out.write(f'{line}\n')


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=               Ppmake Command Interpreter              =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


class _IfState(Enum):
    ON = 'on'
    OFF = 'off'
    ELSE = 'else'
    DONE = 'done'


class _BlockState(Enum):
    BEGIN = 'begin'
    FORSCOPES = 'forscopes'
    NESTED_FORSCOPES = 'nested forscopes'
    FOREACH = 'foreach'
    NESTED_FOREACH = 'nested foreach'
    FORMAP = 'formap'
    NESTED_FORMAP = 'nested formap'
    DEFSUB = 'defsub'
    DEFUN = 'defun'
    OUTPUT = 'output'

    @property
    def command(self) -> str:
        return self.value.split()[-1]


@dataclass
class _BlockNesting:
    state: _BlockState
    name: str
    scope: PpmakeScope
    writer: PpmakeWriter
    words: List[str] = field(default_factory=list)
    output: Optional[TextIO] = None
    true_name: str = ''
    temp_name: Optional[str] = None


class PpmakeCommandFile:
    """
    Line-oriented interpreter of a description file. Text lines are
    expanded and written, lines starting with `#` and a letter are
    directives. Lines inside `#forscopes`, `#foreach`, `#formap`,
    `#defsub` and `#defun` are captured and replayed at the `#end`.
    """

    def __init__(self, scope: PpmakeScope) -> None:
        self._session: PpmakeSession = scope.session
        self._scope: PpmakeScope = scope
        self._writer: PpmakeWriter = PpmakeWriter()
        self._got_command: bool = False
        self._in_for: bool = False
        self._command: str = ''
        self._params: str = ''
        self._if_nesting: List[_IfState] = []
        self._block_nesting: List[_BlockNesting] = []
        self._saved_lines: List[str] = []
        self._file_path: Optional[str] = None
        self._line_number: int = 0

    @property
    def scope(self) -> PpmakeScope:
        return self._scope

    def set_output(self, out: TextIO) -> None:
        self._writer.out = out

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def read_file(self, file_path: str) -> None:
        """Interpret the description file."""
        lines = self._read_lines_of(file_path)
        self.begin_read()
        try:
            with self._pushed_filename(file_path):
                self._read_file_lines(file_path, lines)
            try:
                self.end_read()
            except PpmakeError as error:
                error.locate(file_path, len(lines))
                raise
        finally:
            self._abandon_blocks()

    def read_stream(self, stream: TextIO) -> None:
        self.read_lines(stream.read().splitlines())

    def read_lines(self, lines: Iterable[str]) -> None:
        self.begin_read()
        try:
            for line in lines:
                self.read_line(line)
            self.end_read()
        finally:
            self._abandon_blocks()

    def begin_read(self) -> None:
        self._got_command = False
        self._in_for = False
        self._saved_lines = []

    def end_read(self) -> None:
        """Finish reading, report the constructs that were left open."""
        messages: List[str] = []
        if self._got_command:
            messages.append('unexpected end of file in continuation lines')
        if self._if_nesting:
            messages.append('unclosed #if')
        if self._block_nesting:
            nest = self._block_nesting[-1]
            messages.append(f'unclosed {nest.state.command} {nest.name}')
        self._abandon_blocks()
        if messages:
            raise PpmakeSyntaxError('; '.join(messages))

    def _abandon_blocks(self) -> None:
        """Close the outputs of the blocks left open, drop their staged files."""
        for nest in self._block_nesting:
            if nest.output is not None:
                nest.output.close()
                if nest.temp_name is not None:
                    os.remove(nest.temp_name)
        if self._block_nesting:
            self._scope = self._block_nesting[0].scope
            self._writer = self._block_nesting[0].writer
        self._got_command = False
        self._in_for = False
        self._if_nesting.clear()
        self._block_nesting.clear()
        self._saved_lines = []

    def read_line(self, line: str) -> None:
        """Interpret one line of the description file."""
        try:
            self._read_line(line)
        except PpmakeError as error:
            if self._file_path is not None:
                error.locate(self._file_path, self._line_number)
            raise

    def _read_line(self, line: str) -> None:
        comment_at = _find_comment(line)
        if comment_at != -1:
            line = line[:comment_at].rstrip()
            if not line:
                return
        if self._in_for:
            self._saved_lines.append(line)
        if self._got_command:
            self._handle_command(line)
            return
        stripped = line.lstrip()
        if len(stripped) > 1 and stripped[0] == '#' and stripped[1].isalpha():
            self._handle_command(stripped[1:])
            return
        if not stripped:
            line = ''
        if not self._in_for and not self._failed_if():
            self._writer.write_line(self._scope.expand_string(line))

    def include_file(self, file_path: str) -> None:
        """Interpret the file inline, within the current state."""
        lines = self._read_lines_of(file_path)
        with self._pushed_filename(file_path):
            self._read_file_lines(file_path, lines)

    @staticmethod
    def _read_lines_of(file_path: str) -> List[str]:
        try:
            with open(file_path, mode='r', errors='replace') as file:
                return file.read().splitlines()
        except OSError as error:
            message = f'unable to open `{file_path}`: {error.strerror}'
            raise PpmakeRuntimeError(message) from error

    def _read_file_lines(self, file_path: str, lines: List[str]) -> None:
        old_file_path, old_line_number = self._file_path, self._line_number
        self._file_path = file_path
        try:
            for self._line_number, line in enumerate(lines, start=1):
                self.read_line(line)
        finally:
            self._file_path, self._line_number = old_file_path, old_line_number

    @contextmanager
    def _pushed_filename(self, file_path: str) -> Iterator[None]:
        """Define `THISFILENAME` and `THISDIRPREFIX` while reading the file."""
        scope = self._scope
        old_file_name = scope.get_variable('THISFILENAME')
        old_dir_prefix = scope.get_variable('THISDIRPREFIX')
        scope.define_variable('THISFILENAME', file_path)
        scope.define_variable('THISDIRPREFIX',
                              file_path[:file_path.rfind('/') + 1])
        try:
            yield
        finally:
            scope.define_variable('THISFILENAME', old_file_name)
            scope.define_variable('THISDIRPREFIX', old_dir_prefix)

    @contextmanager
    def _entered_scope(self, scope: PpmakeScope) -> Iterator[None]:
        """Stack the current scope and make the given one current."""
        old_scope = self._scope
        with self._session.pushed_scope(old_scope):
            self._scope = scope
            try:
                yield
            finally:
                self._scope = old_scope

    def _failed_if(self) -> bool:
        return bool(self._if_nesting) and \
            self._if_nesting[-1] in (_IfState.OFF, _IfState.DONE)

    def _expanded_params(self) -> str:
        return self._scope.expand_string(self._params).strip()

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _handle_command(self, line: str) -> None:
        if self._got_command:
            self._params += line
        else:
            self._command, self._params = _split_first_word(line)
        if self._params.endswith('\\'):
            # The directive continues on the next line.
            self._got_command = True
            self._params = self._params[:-1] + ' '
            return
        self._got_command = False
        self._dispatch_command()

    def _dispatch_command(self) -> None:
        command = self._command
        if (handler := _CONDITIONAL_COMMANDS.get(command)) is not None:
            handler(self)
            return
        if self._failed_if():
            return
        if (handler := _BLOCK_COMMANDS.get(command)) is not None:
            handler(self)
            return
        if self._in_for:
            return
        if (handler := _PLAIN_COMMANDS.get(command)) is not None:
            handler(self)
            return
        message = f'invalid command `#{command}`'
        raise PpmakeSyntaxError(message)

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _evaluate_condition(self) -> bool:
        # Captured lines are evaluated when they are replayed.
        if self._in_for:
            return bool(self._params.strip())
        return bool(self._expanded_params())

    def _handle_if_command(self) -> None:
        if self._failed_if():
            self._if_nesting.append(_IfState.DONE)
        elif self._evaluate_condition():
            self._if_nesting.append(_IfState.ON)
        else:
            self._if_nesting.append(_IfState.OFF)

    def _handle_elif_command(self) -> None:
        if not self._if_nesting:
            raise PpmakeSyntaxError('#elif encountered without #if')
        state = self._if_nesting[-1]
        if state is _IfState.ELSE:
            raise PpmakeSyntaxError('#elif encountered after #else')
        if state in (_IfState.ON, _IfState.DONE):
            self._if_nesting[-1] = _IfState.DONE
        elif self._evaluate_condition():
            self._if_nesting[-1] = _IfState.ON

    def _handle_else_command(self) -> None:
        if not self._if_nesting:
            raise PpmakeSyntaxError('#else encountered without #if')
        state = self._if_nesting[-1]
        if state is _IfState.ELSE:
            raise PpmakeSyntaxError('#else encountered after #else')
        if state in (_IfState.ON, _IfState.DONE):
            self._if_nesting[-1] = _IfState.DONE
        else:
            self._if_nesting[-1] = _IfState.ELSE

    def _handle_endif_command(self) -> None:
        if not self._if_nesting:
            raise PpmakeSyntaxError('#endif encountered without #if')
        self._if_nesting.pop()

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _push_block(self, state: _BlockState,
                    name: str, words: Iterable[str] = ()) -> _BlockNesting:
        nest = _BlockNesting(state, name, self._scope, self._writer, list(words))
        self._block_nesting.append(nest)
        return nest

    def _push_capture_block(self, state: _BlockState,
                            name: str, words: Iterable[str] = ()) -> None:
        self._push_block(state, name, words)
        if not self._in_for:
            self._in_for = True
            self._saved_lines = []

    def _handle_begin_command(self) -> None:
        name = self._expanded_params()
        if _contains_whitespace(name):
            message = f'attempt to define scope named `{name}`: ' \
                'scope names may not contain whitespace'
            raise PpmakeSyntaxError(message)
        if SCOPE_DIRNAME_SEPARATOR in name:
            message = f'attempt to define scope named `{name}`: ' \
                f'scope names may not contain `{SCOPE_DIRNAME_SEPARATOR}`'
            raise PpmakeSyntaxError(message)
        self._push_block(_BlockState.BEGIN, name)
        if self._in_for:
            # The scope is created when the captured lines are replayed.
            return
        if name == 'global':
            self._scope = self._session.bottom_scope
            return
        named_scopes = self._scope.named_scopes
        if named_scopes is None:
            message = f'attempt to define scope named `{name}` ' \
                'outside of a named scopes registry'
            raise PpmakeRuntimeError(message)
        scope = named_scopes.make_scope(name)
        scope.parent = self._scope
        self._scope = scope

    def _handle_forscopes_command(self) -> None:
        state = _BlockState.NESTED_FORSCOPES \
            if self._in_for else _BlockState.FORSCOPES
        self._push_capture_block(state, self._expanded_params())

    def _handle_foreach_command(self) -> None:
        words = tokenize_whitespace(self._scope.expand_string(self._params))
        if self._in_for:
            self._push_block(_BlockState.NESTED_FOREACH, words[0] if words else '')
            return
        if not words:
            raise PpmakeSyntaxError('#foreach requires at least one parameter')
        self._push_capture_block(_BlockState.FOREACH, words[0], words[1:])

    def _handle_formap_command(self) -> None:
        words = tokenize_whitespace(self._scope.expand_string(self._params))
        if self._in_for:
            self._push_block(_BlockState.NESTED_FORMAP, words[0] if words else '')
            return
        if len(words) != 2:
            raise PpmakeSyntaxError('#formap requires exactly two parameters')
        self._push_capture_block(_BlockState.FORMAP, words[0], words[1:])

    def _handle_defsub_command(self) -> None:
        self._start_subroutine(_BlockState.DEFSUB)

    def _handle_defun_command(self) -> None:
        self._start_subroutine(_BlockState.DEFUN)

    def _start_subroutine(self, state: _BlockState) -> None:
        command = f'#{state.value}'
        name, formals_string = _split_first_word(self._params)
        if not name:
            message = f'{command} requires at least one parameter'
            raise PpmakeSyntaxError(message)
        formals = self._scope.tokenize_params(formals_string, expand=False)
        for formal in formals:
            if not formal or _INVALID_FORMAL_CHARS.intersection(formal):
                message = f'invalid formal parameter name `{formal}` ' \
                    f'in {command} {name}'
                raise PpmakeSyntaxError(message)
        if self._in_for:
            message = f'{command} may not appear within ' \
                'another block scoping command like #forscopes or #foreach'
            raise PpmakeSyntaxError(message)
        self._push_capture_block(state, name, formals)

    def _handle_output_command(self) -> None:
        name = self._expanded_params()
        nest = self._push_block(_BlockState.OUTPUT, name)
        if self._in_for:
            return
        if not name:
            raise PpmakeRuntimeError('attempt to output to empty filename')
        file_path = name
        if not os.path.isabs(file_path):
            file_path = self._scope.expand_variable('DIRPREFIX') + file_path
        nest.true_name = file_path
        try:
            if os.path.exists(file_path):
                # Written aside and moved over the old file only when changed.
                descriptor, nest.temp_name = tempfile.mkstemp(
                    prefix='pptmp', dir=os.path.dirname(file_path) or '.')
                nest.output = os.fdopen(descriptor, mode='w')
            else:
                _LOGGER.info('Generating %s', file_path)
                nest.output = open(file_path, mode='w')
        except OSError as error:
            message = f'unable to open output file `{file_path}`: {error.strerror}'
            raise PpmakeRuntimeError(message) from error
        self._writer = self._writer.copy(nest.output)

    def _handle_format_command(self) -> None:
        if self._in_for:
            return
        name = self._expanded_params()
        try:
            self._writer.format = PpmakeWriteFormat(name)
        except ValueError:
            _LOGGER.warning('ignoring invalid write format `%s`', name)

    def _handle_print_command(self) -> None:
        if not self._in_for:
            print(self._expanded_params(), file=sys.stderr, flush=True)

    def _handle_end_command(self) -> None:
        name = self._expanded_params()
        if not self._block_nesting:
            message = f'unmatched #end {name}'
            raise PpmakeSyntaxError(message)
        nest = self._block_nesting[-1]
        if nest.name != name:
            message = f'#end {name} encountered where ' \
                f'#end {nest.name} expected'
            raise PpmakeSyntaxError(message)
        self._block_nesting.pop()
        self._scope = nest.scope
        self._writer = nest.writer
        state = nest.state
        if state is _BlockState.FORSCOPES:
            self._in_for = False
            self._replay_forscopes(nest.name)
        elif state is _BlockState.FOREACH:
            self._in_for = False
            self._replay_foreach(nest.name, nest.words)
        elif state is _BlockState.FORMAP:
            self._in_for = False
            self._replay_formap(nest.name, nest.words[0])
        elif state in (_BlockState.DEFSUB, _BlockState.DEFUN):
            self._in_for = False
            subroutine = PpmakeSubroutine(
                tuple(nest.words), tuple(self._take_saved_lines()))
            if state is _BlockState.DEFSUB:
                self._session.define_sub(nest.name, subroutine)
            else:
                self._session.define_func(nest.name, subroutine)
        elif state is _BlockState.OUTPUT and nest.output is not None:
            nest.output.close()
            if nest.temp_name is not None:
                self._commit_output(nest.temp_name, nest.true_name)

    @staticmethod
    def _commit_output(temp_name: str, true_name: str) -> None:
        """Replace the output file with the new contents only if they differ."""
        if filecmp.cmp(temp_name, true_name, shallow=False):
            os.remove(temp_name)
            return
        _LOGGER.info('Generating %s', true_name)
        try:
            shutil.copymode(true_name, temp_name)
            os.replace(temp_name, true_name)
        except OSError as error:
            message = f'unable to rename `{temp_name}` to `{true_name}`: ' \
                f'{error.strerror}'
            raise PpmakeRuntimeError(message) from error

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _take_saved_lines(self) -> List[str]:
        """Take the captured lines, dropping the closing `#end`."""
        lines, self._saved_lines = self._saved_lines, []
        if lines:
            lines.pop()
        return lines

    def _replay_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.read_line(line)

    def _replay_forscopes(self, name: str) -> None:
        lines = self._take_saved_lines()
        named_scopes = self._scope.named_scopes
        if named_scopes is None:
            return
        scopes = PpmakeNamedScopes.sort_by_dependency(
            named_scopes.get_scopes_list(tokenize_whitespace(name)))
        for scope in scopes:
            with self._entered_scope(scope):
                self._replay_lines(lines)

    def _replay_foreach(self, name: str, words: Iterable[str]) -> None:
        lines = self._take_saved_lines()
        for word in words:
            self._scope.define_variable(name, word)
            self._replay_lines(lines)

    def _replay_formap(self, name: str, map_name: str) -> None:
        lines = self._take_saved_lines()
        mapping = self._scope.find_map_variable(map_name)
        if mapping is None:
            message = f'undefined map variable `{map_name}` in #formap {name}'
            raise PpmakeRuntimeError(message)
        for key, scope in sorted(mapping.items(), key=lambda item: item[0]):
            self._scope.define_variable(name, key)
            with self._entered_scope(scope):
                self._replay_lines(lines)

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def _include_filename(self) -> str:
        filename = self._expanded_params()
        if len(filename) > 1 and filename[0] == filename[-1] == '"':
            filename = filename[1:-1]
        return filename

    def _handle_include_command(self) -> None:
        self.include_file(self._include_filename())

    def _handle_sinclude_command(self) -> None:
        filename = self._include_filename()
        if os.path.exists(filename):
            self.include_file(filename)

    def _handle_call_command(self) -> None:
        name, params = _split_first_word(self._params)
        if not name:
            raise PpmakeSyntaxError('#call requires at least one parameter')
        subroutine = self._session.get_sub(name)
        if subroutine is None:
            message = f'attempt to call undefined subroutine `{name}`'
            raise PpmakeRuntimeError(message)
        nested_scope = PpmakeScope(self._session, self._scope.named_scopes)
        with self._entered_scope(nested_scope):
            nested_scope.define_formals(name, subroutine.formals, params)
            self._replay_lines(subroutine.lines)

    def _handle_error_command(self) -> None:
        raise PpmakeRuntimeError(self._expanded_params() or '#error')

    def _handle_defer_command(self) -> None:
        name, definition = _split_first_word(self._params)
        if self._session.get_func(name) is not None:
            _LOGGER.warning('variable %s will be shadowed by function '
                            'of the same name', name)
        self._scope.define_variable(
            name, self._scope.expand_self_reference(definition.strip(), name))

    def _handle_define_command(self) -> None:
        name, definition = _split_first_word(self._params)
        if self._session.get_func(name) is not None:
            _LOGGER.warning('variable %s will be shadowed by function '
                            'of the same name', name)
        self._scope.define_variable(
            name, self._scope.expand_string(definition).strip())

    def _handle_set_command(self) -> None:
        name, definition = _split_first_word(self._params)
        value = self._scope.expand_string(definition).strip()
        if not self._scope.set_variable(name, value):
            message = f'attempt to set undefined variable `{name}`'
            raise PpmakeRuntimeError(message)

    def _handle_map_command(self) -> None:
        name, definition = _split_first_word(self._params)
        self._scope.define_map_variable_from(name, definition.strip())

    def _handle_addmap_command(self) -> None:
        name, key = _split_first_word(self._params)
        key = self._scope.expand_string(key).strip()
        self._scope.add_to_map_variable(name, key, self._scope)


_CONDITIONAL_COMMANDS: Final[Dict[str, Callable[[PpmakeCommandFile], None]]] = {
    'if': PpmakeCommandFile._handle_if_command,
    'elif': PpmakeCommandFile._handle_elif_command,
    'else': PpmakeCommandFile._handle_else_command,
    'endif': PpmakeCommandFile._handle_endif_command,
}

_BLOCK_COMMANDS: Final[Dict[str, Callable[[PpmakeCommandFile], None]]] = {
    'begin': PpmakeCommandFile._handle_begin_command,
    'forscopes': PpmakeCommandFile._handle_forscopes_command,
    'foreach': PpmakeCommandFile._handle_foreach_command,
    'formap': PpmakeCommandFile._handle_formap_command,
    'format': PpmakeCommandFile._handle_format_command,
    'output': PpmakeCommandFile._handle_output_command,
    'print': PpmakeCommandFile._handle_print_command,
    'defsub': PpmakeCommandFile._handle_defsub_command,
    'defun': PpmakeCommandFile._handle_defun_command,
    'end': PpmakeCommandFile._handle_end_command,
}

_PLAIN_COMMANDS: Final[Dict[str, Callable[[PpmakeCommandFile], None]]] = {
    'include': PpmakeCommandFile._handle_include_command,
    'sinclude': PpmakeCommandFile._handle_sinclude_command,
    'call': PpmakeCommandFile._handle_call_command,
    'error': PpmakeCommandFile._handle_error_command,
    'defer': PpmakeCommandFile._handle_defer_command,
    'define': PpmakeCommandFile._handle_define_command,
    'set': PpmakeCommandFile._handle_set_command,
    'map': PpmakeCommandFile._handle_map_command,
    'addmap': PpmakeCommandFile._handle_addmap_command,
}


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=             Ppmake Driver and Entry Point             =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


def ppmake_expand(file_path: str,
                  output_file_path: Optional[str] = None,
                  options: Optional[PpmakeOptions] = None) -> None:
    """Expand a single description file."""
    session = PpmakeSession(options)
    scope = PpmakeScope(session, PpmakeNamedScopes(session))
    scope.parent = session.global_scope
    for define in session.options.defines:
        name, _, value = define.partition('=')
        scope.define_variable(name.strip(), value.strip())
    command_file = PpmakeCommandFile(scope)
    if output_file_path is None:
        command_file.read_file(file_path)
        return
    with open(output_file_path, mode='w') as output_file:
        command_file.set_output(output_file)
        command_file.read_file(file_path)


def main() -> None:
    """Ppmake single file entry point."""
    arg_parser = argparse.ArgumentParser(
        prog='ppmake-expand',
        description='expand the ppmake directives of a single file')
    arg_parser.add_argument(
        '-D', '--define', metavar='name[=value]',
        action='append', dest='defines', default=[],
        help='define a variable of the top-level scope')
    arg_parser.add_argument(
        '-o', '--output', metavar='output_file_path',
        dest='output_file_path', default=None,
        help='file to write the output to, standard output by default')
    arg_parser.add_argument(
        'file_path', help='description file to expand')
    args = arg_parser.parse_args()
    coloredlogs.install(level=logging.INFO,
                        fmt='%(levelname)s %(message)s')
    options = PpmakeOptions(defines=args.defines)
    try:
        ppmake_expand(args.file_path, args.output_file_path, options)
    except PpmakeError as error:
        _LOGGER.error('%s', error)
        sys.exit(1)


if __name__ == '__main__':
    main()
