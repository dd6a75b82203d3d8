#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# pylint: disable=protected-access

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
Ppmake source tree: directories, dependable files and the driver.
"""

import os
import re
import sys
import logging
import argparse
import platform

from typing import (
    final, TextIO,
    Iterable, List, Set, Dict, Tuple, Mapping,
    Final, Optional)

import coloredlogs

from ppmake import (
    PPMAKE_VERSION, PpmakeError, PpmakeRuntimeError,
    PpmakeDependencyCycleError, PpmakeOptions, PpmakeSession, PpmakeScope,
    PpmakeNamedScopes, PpmakeCommandFile, tokenize_whitespace)

_LOGGER: Final = logging.getLogger(__name__)

_EXIT_SUCCESS: Final = 0
_EXIT_ERROR: Final = 1

_REPORT_COLUMN: Final = 72


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                Ppmake Dependable Files                =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


_INCLUDE: Final = re.compile(
    r'^\s*\#\s*include\s*(?:"(?P<quoted>[^"]*)"|<(?P<angled>[^>]*)>)')
_OKCIRCULAR: Final = '/* okcircular */'


def check_include(line: str) -> str:
    """Get the filename of the `#include` line, empty for other lines."""
    match = _INCLUDE.match(line)
    if match is None:
        return ''
    if match['quoted'] is not None:
        return match['quoted']
    return match['angled']


@final
class PpmakeDependableFile:
    """
    Source or header file whose `#include` dependencies are scanned
    on demand and remembered in the per-directory dependency cache.
    """

    def __init__(self, directory: 'PpmakeDirectory', filename: str) -> None:
        self.directory: PpmakeDirectory = directory
        self.filename: str = filename
        self._updating: bool = False
        self._updated: bool = False
        self._from_cache: bool = False
        self._statted: bool = False
        self._exists: bool = False
        self._mtime: int = 0
        self._circularity: Optional[str] = None
        self._dependencies: List[Tuple[PpmakeDependableFile, bool]] = []
        self._extra_includes: List[str] = []

    def __repr__(self) -> str:
        return f'PpmakeDependableFile({self.get_dirpath()!r})'

    def get_pathname(self) -> str:
        """Path of the file relative to the source root."""
        return f'{self.directory.get_path()}/{self.filename}'

    def get_dirpath(self) -> str:
        """Name of the file qualified with its directory name."""
        return f'{self.directory.dirname}/{self.filename}'

    @property
    def exists(self) -> bool:
        self._stat_file()
        return self._exists

    @property
    def mtime(self) -> int:
        self._stat_file()
        return self._mtime

    def _stat_file(self) -> None:
        if self._statted:
            return
        self._statted = True
        try:
            stat = os.stat(self.get_pathname())
        except OSError:
            self._exists, self._mtime = False, 0
        else:
            self._exists, self._mtime = True, int(stat.st_mtime)

    def update_from_cache(self, words: List[str]) -> None:
        """
        Take the dependencies from the cache line, but only if the file
        was not modified since the line was written.
        """
        if self._updated or self._updating:
            return
        try:
            mtime = int(words[1])
        except ValueError:
            _LOGGER.warning('invalid cache entry for %s', self.get_pathname())
            return
        if not self.exists or self.mtime != mtime:
            return
        tree = self.directory.tree
        dependencies: List[Tuple[PpmakeDependableFile, bool]] = []
        extra_includes: List[str] = []
        for word in words[2:]:
            okcircular = word.startswith('/')
            if okcircular:
                word = word[1:]
            if word.startswith('*'):
                extra_includes.append(word[1:])
                continue
            file = tree.get_dependable_file_by_dirpath(word, False)
            if file is None:
                # The tree has changed, rescan the file.
                return
            dependencies.append((file, okcircular))
        self._dependencies = dependencies
        self._extra_includes = extra_includes
        self._from_cache = True

    def write_cache(self, out: TextIO) -> None:
        words = [self.filename, str(self.mtime)]
        for file, okcircular in self._dependencies:
            prefix = '/' if okcircular else ''
            words.append(f'{prefix}{file.get_dirpath()}')
        words += (f'*{include}' for include in self._extra_includes)
        out.write(' '.join(words) + '\n')

    @property
    def dependencies(self) -> List['PpmakeDependableFile']:
        """Files this file includes directly."""
        self._update_dependencies()
        return [file for file, _ in self._dependencies]

    @property
    def extra_includes(self) -> List[str]:
        """Included names that are not dependable files of the tree."""
        self._update_dependencies()
        return list(self._extra_includes)

    def get_complete_dependencies(self) -> Set['PpmakeDependableFile']:
        """Files this file includes, directly or indirectly."""
        found: Set[PpmakeDependableFile] = set()
        pending = [self]
        while pending:
            for file in pending.pop().dependencies:
                if file not in found:
                    found.add(file)
                    pending.append(file)
        return found

    @property
    def circularity(self) -> Optional[str]:
        """Description of the `#include` cycle starting at this file."""
        self._update_dependencies()
        return self._circularity

    def is_circularity(self) -> bool:
        return self.circularity is not None

    def was_examined(self) -> bool:
        return self._updated

    def _update_dependencies(self) -> None:
        if not self._updated:
            self._compute_dependencies()

    def _compute_dependencies(self) -> Tuple[Optional['PpmakeDependableFile'], str]:
        """
        Resolve the dependencies, recursively. Return the file that closes
        an include cycle found below this one, with the cycle description.
        """
        if self._updating:
            return self, self.filename
        if self._updated:
            return None, ''
        self._updating = True
        if not self._from_cache:
            self._scan_includes()
        cycle_file: Optional[PpmakeDependableFile] = None
        circularity = ''
        for file, okcircular in self._dependencies:
            cycle_file, circularity = file._compute_dependencies()
            if cycle_file is not None and not okcircular:
                break
            cycle_file = None
        self._updating = False
        self._updated = True
        if cycle_file is None:
            return None, ''
        circularity = f'{self.filename} => {circularity}'
        if cycle_file is self:
            self._circularity = circularity
            return None, ''
        return cycle_file, circularity

    def _scan_includes(self) -> None:
        pathname = self.get_pathname()
        try:
            with open(pathname, mode='r', errors='replace') as file:
                lines = file.read().splitlines()
        except OSError:
            _LOGGER.debug('dependent file %s cannot be read', pathname)
            return
        tree = self.directory.tree
        okcircular = False
        for line in lines:
            if line.startswith(_OKCIRCULAR):
                okcircular = True
                continue
            filename = check_include(line)
            if filename and '/' not in filename:
                file = tree.find_dependable_file(filename)
                if file is not None:
                    self._dependencies.append((file, okcircular))
                else:
                    self._extra_includes.append(filename)
            okcircular = False


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                   Ppmake Directories                  =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


def _dependency_order(directory: 'PpmakeDirectory') -> Tuple[int, str]:
    return directory.depends_index, directory.dirname


def _show_directories(directories: Iterable['PpmakeDirectory']) -> str:
    """List the directory names in dependency order, wrapped at 72 columns."""
    text = ''
    column = _REPORT_COLUMN
    for directory in sorted(directories, key=_dependency_order):
        dirname = directory.dirname
        column += len(dirname) + 1
        if column >= _REPORT_COLUMN:
            column = len(dirname) + 2
            text += f'\n  {dirname}'
        else:
            text += f' {dirname}'
    return text + '\n'


class PpmakeDirectory:
    """Directory of the source tree holding a source description file."""

    def __init__(self, tree: 'PpmakeDirectoryTree',
                 dirname: str = 'top',
                 parent: Optional['PpmakeDirectory'] = None) -> None:
        self.tree: PpmakeDirectoryTree = tree
        self.dirname: str = dirname
        self.parent: Optional[PpmakeDirectory] = parent
        self.depth: int = 0 if parent is None else parent.depth + 1
        self.children: List[PpmakeDirectory] = []
        self.scope: Optional[PpmakeScope] = None
        self.source: Optional[PpmakeCommandFile] = None
        self.depends_index: int = 0
        self._computing_depends_index: bool = False
        self._i_depend_on: List[PpmakeDirectory] = []
        self._depends_on_me: List[PpmakeDirectory] = []
        self._dependables: Dict[str, PpmakeDependableFile] = {}
        if parent is not None:
            parent.children.append(self)
        tree.add_dirname(self)

    def __repr__(self) -> str:
        return f'PpmakeDirectory({self.dirname!r})'

    def get_path(self) -> str:
        """Path from the source root, `.` for the root itself."""
        if self.parent is None:
            return '.'
        if self.parent.parent is None:
            return self.dirname
        return f'{self.parent.get_path()}/{self.dirname}'

    def get_rel_to(self, other: 'PpmakeDirectory') -> str:
        """Relative path from this directory to the other one."""
        if self is other:
            return '.'
        this: Optional[PpmakeDirectory] = self
        prefix, postfix = '', ''
        while this.depth > other.depth:
            prefix += '../'
            this = this.parent
        while other.depth > this.depth:
            postfix = f'{other.dirname}/{postfix}'
            other = other.parent
        while this is not other:
            prefix += '../'
            postfix = f'{other.dirname}/{postfix}'
            this, other = this.parent, other.parent
        return (prefix + postfix)[:-1]

    def get_child_dirnames(self) -> str:
        """Names of the subdirectories, in dependency order."""
        return ' '.join(child.dirname
                        for child in sorted(self.children, key=_dependency_order))

    def get_complete_subtree(self) -> str:
        """Paths of this directory and every directory below, in dependency order."""
        words = [self.get_path()]
        words += (child.get_complete_subtree()
                  for child in sorted(self.children, key=_dependency_order))
        return ' '.join(words)

    def count_source_files(self) -> int:
        count = 1 if self.source is not None else 0
        return count + sum(child.count_source_files() for child in self.children)

    def get_dependable_file(self, filename: str,
                            is_header: bool) -> PpmakeDependableFile:
        """
        Get the dependable file of this directory, create one on the first
        request. Headers are also indexed by the tree, so the other
        directories could find them.
        """
        file = self._dependables.get(filename)
        if file is not None:
            return file
        file = PpmakeDependableFile(self, filename)
        self._dependables[filename] = file
        if is_header:
            self.tree.add_dependable_header(file)
        return file

    def add_dependency(self, directory: 'PpmakeDirectory') -> None:
        """Record that this directory depends on the other one."""
        if directory not in self._i_depend_on:
            self._i_depend_on.append(directory)
        if self not in directory._depends_on_me:
            directory._depends_on_me.append(self)

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def r_scan(self, prefix: str) -> None:
        """Find the subdirectories that have their own source file."""
        root_name = prefix[:-1] if prefix else '.'
        try:
            filenames = sorted(os.listdir(root_name))
        except OSError as error:
            message = f'unable to scan directory `{root_name}`: {error.strerror}'
            raise PpmakeRuntimeError(message) from error
        source_filename = self.tree.session.options.source_filename
        for filename in filenames:
            if filename.startswith('.'):
                continue
            next_prefix = f'{prefix}{filename}/'
            if os.path.exists(next_prefix + source_filename):
                PpmakeDirectory(self.tree, filename, self).r_scan(next_prefix)

    def read_source_file(self, prefix: str,
                         named_scopes: PpmakeNamedScopes) -> None:
        source_filename = self.tree.session.options.source_filename
        source_file_path = prefix + source_filename
        if os.path.exists(source_file_path):
            _LOGGER.debug('Reading %s', source_file_path)
            named_scopes.set_current(self.dirname, self)
            self.scope = named_scopes.make_scope('')
            self.scope.define_variable('SOURCEFILE', source_filename)
            self.scope.define_variable('DIRNAME', self.dirname)
            self.scope.define_variable('DIRPREFIX', prefix)
            self.scope.define_variable('PATH', self.get_path())
            self.scope.define_variable('SUBDIRS', self.get_child_dirnames())
            self.scope.define_variable('SUBTREE', self.get_complete_subtree())
            self.scope.directory = self
            self.source = PpmakeCommandFile(self.scope)
            self.source.read_file(source_file_path)
        for child in self.children:
            child.read_source_file(f'{prefix}{child.dirname}/', named_scopes)

    def read_depends_file(self, named_scopes: PpmakeNamedScopes) -> None:
        """Read the dependency definitions for this directory and below."""
        if self.scope is not None:
            depends_file_path = self.scope.expand_variable('DEPENDS_FILE')
            if not depends_file_path:
                message = 'no definition given for $[DEPENDS_FILE], cannot process'
                raise PpmakeRuntimeError(message)
            named_scopes.set_current(self.dirname, self)
            PpmakeCommandFile(self.scope).read_file(depends_file_path)
            for dirname in tokenize_whitespace(
                    self.scope.expand_variable('DEPEND_DIRS')):
                directory = self.tree.find_dirname(dirname)
                if directory is None:
                    _LOGGER.warning('could not find dependent dirname %s', dirname)
                elif directory is not self:
                    self.add_dependency(directory)
            for header in tokenize_whitespace(
                    self.scope.expand_variable('DEPENDABLE_HEADERS')):
                self.get_dependable_file(header, True)
        for child in self.children:
            child.read_depends_file(named_scopes)

    def resolve_dependencies(self) -> None:
        self.compute_depends_index()
        for child in self.children:
            child.resolve_dependencies()
        # Children are ordered only now that their indices are known.
        if self.scope is not None:
            self.scope.define_variable('SUBDIRS', self.get_child_dirnames())
            self.scope.define_variable('SUBTREE', self.get_complete_subtree())

    def compute_depends_index(self) -> int:
        """
        Compute the dependency index: 1 for a directory that depends on
        nothing, otherwise one more than the largest index among the
        directories it depends on.
        """
        if self.depends_index != 0:
            return self.depends_index
        if not self._i_depend_on:
            self.depends_index = 1
            return self.depends_index
        self._computing_depends_index = True
        max_index = 0
        for directory in self._i_depend_on:
            if directory._computing_depends_index:
                self._computing_depends_index = False
                raise PpmakeDependencyCycleError(self.dirname, directory.dirname)
            try:
                max_index = max(max_index, directory.compute_depends_index())
            except PpmakeDependencyCycleError as error:
                self._computing_depends_index = False
                error.add_edge(self.dirname, directory.dirname)
                raise
        self._computing_depends_index = False
        self.depends_index = max_index + 1
        return self.depends_index

    def get_complete_i_depend_on(self) -> Set['PpmakeDirectory']:
        """Directories this one depends on, directly or indirectly."""
        found: Set[PpmakeDirectory] = set()
        pending = [self]
        while pending:
            for directory in pending.pop()._i_depend_on:
                if directory not in found:
                    found.add(directory)
                    pending.append(directory)
        return found

    def get_complete_depends_on_me(self) -> Set['PpmakeDirectory']:
        """Directories that depend on this one, directly or indirectly."""
        found: Set[PpmakeDirectory] = set()
        pending = [self]
        while pending:
            for directory in pending.pop()._depends_on_me:
                if directory not in found:
                    found.add(directory)
                    pending.append(directory)
        return found

    def report_depends(self) -> str:
        if not self._i_depend_on:
            return f'{self.dirname} depends on no other directories.\n'
        return f'{self.dirname} depends directly on the following directories:' \
            f'{_show_directories(self._i_depend_on)}' \
            'and directly or indirectly on the following directories:' \
            f'{_show_directories(self.get_complete_i_depend_on())}'

    def report_needs(self) -> str:
        if not self._depends_on_me:
            return f'{self.dirname} is needed by no other directories.\n'
        return f'{self.dirname} is needed directly by the following directories:' \
            f'{_show_directories(self._depends_on_me)}' \
            'and directly or indirectly by the following directories:' \
            f'{_show_directories(self.get_complete_depends_on_me())}'

    # ----------------------------------------------------------------------- #
    # ----------------------------------------------------------------------- #

    def read_file_dependencies(self, cache_filename: str) -> None:
        """Load the cached `#include` dependencies, a missing cache is fine."""
        cache_path = f'{self.get_path()}/{cache_filename}'
        try:
            with open(cache_path, mode='r', errors='replace') as cache_file:
                lines = cache_file.read().splitlines()
        except OSError:
            lines = []
        for line in lines:
            words = tokenize_whitespace(line)
            if len(words) >= 2:
                self.get_dependable_file(words[0], False).update_from_cache(words)
        for child in self.children:
            child.read_file_dependencies(cache_filename)

    def update_file_dependencies(self, cache_filename: str) -> None:
        """Rewrite the cache with every file examined during this run."""
        cache_path = f'{self.get_path()}/{cache_filename}'
        if os.path.exists(cache_path):
            os.remove(cache_path)
        examined = [self._dependables[filename]
                    for filename in sorted(self._dependables)
                    if self._dependables[filename].was_examined()]
        if examined:
            try:
                with open(cache_path, mode='w') as cache_file:
                    for file in examined:
                        if file.is_circularity():
                            _LOGGER.warning('circular #include directives:\n  %s',
                                            file.circularity)
                        file.write_cache(cache_file)
            except OSError as error:
                _LOGGER.warning('cannot update cache dependency file %s: %s',
                                cache_path, error.strerror)
        for child in self.children:
            child.update_file_dependencies(cache_filename)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=                 Ppmake Directory Tree                 =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


class PpmakeDirectoryTree:
    """Hierarchy of the source directories, with name indices."""

    def __init__(self, session: PpmakeSession) -> None:
        self.session: PpmakeSession = session
        self._dirnames: Dict[str, PpmakeDirectory] = {}
        self._dependables: Dict[str, PpmakeDependableFile] = {}
        self.root: PpmakeDirectory = PpmakeDirectory(self)

    def add_dirname(self, directory: PpmakeDirectory) -> None:
        existing = self._dirnames.setdefault(directory.dirname, directory)
        if existing is not directory:
            _LOGGER.warning('multiple directories encountered named %s',
                            directory.dirname)

    def add_dependable_header(self, file: PpmakeDependableFile) -> None:
        existing = self._dependables.setdefault(file.filename, file)
        if existing is not file:
            _LOGGER.warning('source file %s may be confused with %s',
                            file.get_pathname(), existing.get_pathname())

    def scan(self, prefix: str, named_scopes: PpmakeNamedScopes) -> None:
        """Find and read the source and dependency files of the tree."""
        self.root.r_scan(prefix)
        self.root.read_source_file(prefix, named_scopes)
        self.root.read_depends_file(named_scopes)
        self.root.resolve_dependencies()

    def count_source_files(self) -> int:
        return self.root.count_source_files()

    def get_complete_tree(self) -> str:
        return self.root.get_complete_subtree()

    def find_dirname(self, dirname: str) -> Optional[PpmakeDirectory]:
        return self._dirnames.get(dirname)

    def find_dependable_file(self, filename: str) -> Optional[PpmakeDependableFile]:
        return self._dependables.get(filename)

    def get_dependable_file_by_dirpath(
            self, dirpath: str, is_header: bool) -> Optional[PpmakeDependableFile]:
        """Find the file by its `dirname/filename`."""
        dirname, separator, filename = dirpath.rpartition('/')
        if not separator:
            return None
        directory = self.find_dirname(dirname)
        if directory is None:
            return None
        return directory.get_dependable_file(filename, is_header)

    def read_file_dependencies(self, cache_filename: str) -> None:
        self.root.read_file_dependencies(cache_filename)

    def update_file_dependencies(self, cache_filename: str) -> None:
        self.root.update_file_dependencies(cache_filename)


# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=             Ppmake Driver and Entry Point             =-=-=-=-= #
# =-=-=-=-=-=-=-=                                           =-=-=-=-=-=-=-= #
# =-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-=-= #


def _check_one_file(dir_prefix: str, words: List[str]) -> bool:
    """Check that the cache line still describes the file."""
    pathname = dir_prefix + words[0]
    try:
        mtime = int(words[1])
        stat = os.stat(pathname)
    except (ValueError, OSError):
        return False
    if int(stat.st_mtime) == mtime:
        return True
    # The file has changed, compare the included names.
    expected_files: Set[str] = set()
    for word in words[2:]:
        _, separator, filename = word.rpartition('/')
        if not separator:
            return False
        expected_files.add(filename)
    try:
        with open(pathname, mode='r', errors='replace') as file:
            lines = file.read().splitlines()
    except OSError:
        return False
    found_files = {filename for filename in map(check_include, lines)
                   if filename and '/' not in filename}
    return expected_files == found_files


def check_dependencies(dep_filename: str) -> bool:
    """Check whether the dependency cache file is still current."""
    dir_prefix = dep_filename[:dep_filename.rfind('/') + 1]
    try:
        with open(dep_filename, mode='r', errors='replace') as dep_file:
            lines = dep_file.read().splitlines()
    except OSError:
        return False
    for line in lines:
        words = tokenize_whitespace(line)
        if len(words) < 2 or not _check_one_file(dir_prefix, words):
            return False
    return True


def define_global_variables(session: PpmakeSession) -> None:
    """Define the variables every description file may rely on."""
    options = session.options
    scope = session.global_scope
    scope.define_variable('PPREMAKE', 'ppmake')
    scope.define_variable('PPREMAKE_VERSION', PPMAKE_VERSION)
    scope.define_variable('PLATFORM', options.platform)
    scope.define_variable('PACKAGE_FILENAME', options.package_filename)
    scope.define_variable('SOURCE_FILENAME', options.source_filename)
    if options.config_file is not None:
        scope.define_variable('PPREMAKE_CONFIG', options.config_file)
    scope.define_variable('TAB', '\t')


class PpmakeMain:
    """Processing of a whole source tree."""

    def __init__(self,
                 options: Optional[PpmakeOptions] = None,
                 environ: Optional[Mapping[str, str]] = None) -> None:
        self.session: PpmakeSession = PpmakeSession(options, environ)
        define_global_variables(self.session)
        self.named_scopes: PpmakeNamedScopes = PpmakeNamedScopes(self.session)
        self.tree: PpmakeDirectoryTree = PpmakeDirectoryTree(self.session)
        self.def_scope: PpmakeScope = PpmakeScope(self.session, self.named_scopes)
        self.def_scope.parent = self.session.global_scope

    def read_source(self, root: str = '.') -> None:
        """
        Find the package root at or above the directory, read the package
        file, the source files of the whole tree and the global file.
        """
        package_filename = self.session.options.package_filename
        trydir = os.path.abspath(root)
        while not os.path.exists(os.path.join(trydir, package_filename)):
            parent = os.path.dirname(trydir)
            if parent == trydir:
                message = f'could not find source root {package_filename} ' \
                    f'in {root} or in any parent directory'
                raise PpmakeRuntimeError(message)
            trydir = parent
        os.chdir(trydir)
        _LOGGER.debug('Root is %s', trydir)

        self.def_scope.define_variable('PACKAGEFILE', package_filename)
        self.def_scope.define_variable('TOPDIR', trydir)
        PpmakeCommandFile(self.def_scope).read_file(package_filename)

        # The package definitions stay visible for the rest of the run.
        self.session.push_scope(self.def_scope)
        self.tree.scan('', self.named_scopes)
        self.def_scope.define_variable('TREE', self.tree.get_complete_tree())
        if self.tree.count_source_files() == 0:
            message = f'could not find any source definition files ' \
                f'named {self.session.options.source_filename}'
            raise PpmakeRuntimeError(message)

        global_file_path = self.def_scope.expand_variable('GLOBAL_FILE')
        if not global_file_path:
            message = 'no definition given for $[GLOBAL_FILE], cannot process'
            raise PpmakeRuntimeError(message)
        self.named_scopes.set_current('')
        PpmakeCommandFile(self.def_scope).read_file(global_file_path)

    def process_all(self) -> None:
        """Generate the output of every directory of the tree."""
        cache_filename = self._cache_filename()
        self.tree.read_file_dependencies(cache_filename)
        self._r_process_all(self.tree.root)
        self.tree.update_file_dependencies(cache_filename)

    def process(self, dirname: str) -> None:
        """Generate the output of the single directory."""
        directory = self.tree.find_dirname(dirname)
        if directory is None:
            message = f'unknown directory `{dirname}`'
            raise PpmakeRuntimeError(message)
        if directory.source is None:
            message = f'no source file in `{dirname}`'
            raise PpmakeRuntimeError(message)
        cache_filename = self._cache_filename()
        self.tree.read_file_dependencies(cache_filename)
        self._p_process(directory)
        self.tree.update_file_dependencies(cache_filename)

    def report_depends(self, dirname: str) -> str:
        return self._find_directory(dirname).report_depends()

    def report_needs(self, dirname: str) -> str:
        return self._find_directory(dirname).report_needs()

    def _find_directory(self, dirname: str) -> PpmakeDirectory:
        directory = self.tree.find_dirname(dirname)
        if directory is None:
            message = f'unknown directory `{dirname}`'
            raise PpmakeRuntimeError(message)
        return directory

    def _cache_filename(self) -> str:
        cache_filename = self.def_scope.expand_variable('DEPENDENCY_CACHE_FILENAME')
        if not cache_filename:
            message = 'no definition given for $[DEPENDENCY_CACHE_FILENAME], ' \
                'cannot process'
            raise PpmakeRuntimeError(message)
        return cache_filename

    def _r_process_all(self, directory: PpmakeDirectory) -> None:
        if directory.source is not None:
            self._p_process(directory)
        for child in directory.children:
            self._r_process_all(child)

    def _p_process(self, directory: PpmakeDirectory) -> None:
        assert directory.scope is not None
        self.session.current_output_directory = directory
        self.named_scopes.set_current(directory.dirname, directory)
        template_file_path = directory.scope.expand_variable('TEMPLATE_FILE')
        if not template_file_path:
            message = 'no definition given for $[TEMPLATE_FILE], cannot process'
            raise PpmakeRuntimeError(message)
        PpmakeCommandFile(directory.scope).read_file(template_file_path)


def ppmake_run(options: PpmakeOptions) -> int:
    """Run ppmake from the current directory, return the exit status."""
    if options.dependency_files:
        stale = [dep_filename for dep_filename in options.dependency_files
                 if not check_dependencies(dep_filename)]
        if not stale:
            return _EXIT_SUCCESS
        print(sys.argv[0], flush=True)
    try:
        ppmain = PpmakeMain(options)
        ppmain.read_source('.')
        if options.report_depends or options.report_needs:
            if not options.dirnames:
                _LOGGER.error('no named directories')
                return _EXIT_ERROR
            for dirname in options.dirnames:
                if options.report_depends:
                    print(f'\n{ppmain.report_depends(dirname)}',
                          file=sys.stderr, flush=True)
                if options.report_needs:
                    print(f'\n{ppmain.report_needs(dirname)}',
                          file=sys.stderr, flush=True)
        elif not options.dirnames:
            ppmain.process_all()
        else:
            for dirname in options.dirnames:
                ppmain.process(dirname)
    except PpmakeError as error:
        _LOGGER.error('%s', error)
        return _EXIT_ERROR
    _LOGGER.info('No errors.')
    return _EXIT_SUCCESS


def main() -> None:
    """Ppmake entry point."""
    arg_parser = argparse.ArgumentParser(
        prog='ppmake',
        description='generate the build scripts of a source tree '
                    'from the ppmake description files')
    arg_parser.add_argument(
        '-V', '--version', action='version',
        version=f'%(prog)s {PPMAKE_VERSION}')
    arg_parser.add_argument(
        '-P', '--report-platform', action='store_true',
        help='report the platform name and exit')
    arg_parser.add_argument(
        '-D', '--depends-file', metavar='dep_filename',
        action='append', dest='dependency_files', default=[],
        help='check the dependency cache file, '
             'process the tree only if it is stale')
    arg_parser.add_argument(
        '-d', '--report-depends', action='store_true',
        help='report the directories the named directories depend on')
    arg_parser.add_argument(
        '-n', '--report-needs', action='store_true',
        help='report the directories that need the named directories')
    arg_parser.add_argument(
        '-p', '--platform', metavar='platform',
        default=platform.system(),
        help='platform name to generate the build scripts for')
    arg_parser.add_argument(
        '-c', '--config', metavar='config_file', dest='config_file',
        help='configuration file, defined as $[PPREMAKE_CONFIG]')
    arg_parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='report the files being read')
    arg_parser.add_argument(
        'dirnames', metavar='dirname', nargs='*',
        help='directories to process, the whole tree by default')
    args = arg_parser.parse_args()

    coloredlogs.install(level=logging.DEBUG if args.verbose else logging.INFO,
                        fmt='%(levelname)s %(message)s')
    if args.report_platform:
        print(f'ppmake built for platform {args.platform}.', file=sys.stderr)
        sys.exit(_EXIT_SUCCESS)

    options = PpmakeOptions(
        platform=args.platform,
        config_file=args.config_file,
        dependency_files=args.dependency_files,
        dirnames=args.dirnames,
        report_depends=args.report_depends,
        report_needs=args.report_needs)
    sys.exit(ppmake_run(options))


if __name__ == '__main__':
    main()
