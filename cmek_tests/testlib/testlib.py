# @author Couchbase <info@couchbase.com>
# @copyright 2023-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from abc import ABC, abstractmethod
from datetime import datetime

import contextlib
import io
import random
import signal
import string
import sys
import time
from dataclasses import dataclass, field
from traceback import format_exception_only
from typing import List

import traceback_with_variables as traceback


config = {'colors': hasattr(sys.stdout, 'isatty') and sys.stdout.isatty(),
          'verbose': False,
          'dry_run': False,
          'intercept_output': True,
          'report_time': True,
          'test_timeout': 3600}


@dataclass
class TestError:
    name: str
    error: Exception
    env_name: str
    timestamp: datetime = field(default_factory=datetime.now)

    def __str__(self):
        return f'[{self.timestamp.strftime("%H:%M:%S")}] {self.env_name} ' \
               f'{self.name}: {self.error}'


@dataclass
class Testset:
    """A BaseTestSet subclass together with the tests selected to run"""
    name: str
    cls: type
    tests: List[str]
    requirements: object

    def test_names(self, tests=None):
        return [f'{self.cls.__name__}.{t}' for t in
                (self.tests if tests is None else tests)]


class BaseTestSet(ABC):
    """Group of tests sharing requirements, setup and teardown

    Every method whose name ends with _test is a test. The runner calls
    setup() once, then each test followed by test_teardown(), and finally
    teardown(), even when tests fail.
    """

    def __init__(self, env):
        self.env = env

    @staticmethod
    @abstractmethod
    def requirements():
        """EnvRequirements the TestEnv must satisfy for the tests to run"""
        raise NotImplementedError()

    @abstractmethod
    def setup(self):
        raise NotImplementedError()

    @abstractmethod
    def teardown(self):
        """Removes everything the testset created

        Remote resources are billed while they exist, so resources that
        are already gone must not be treated as errors.
        """
        raise NotImplementedError()

    def test_teardown(self):
        pass

    def leftovers(self):
        """Remote resources a failed cleanup left behind (for reporting)"""
        return []


def test_name(testset, testname):
    cls = testset if isinstance(testset, type) else type(testset)
    return f'{cls.__name__}.{testname}'


def run_testset(testset, env, number, total, stop_after_first_error=False):
    """Runs one Testset against env

    Returns (executed, errors, not_ran), the latter two being lists of
    TestError.
    """
    print(f'\nStarting testset[{number}/{total}]: {testset.name}...')
    maybe_print(f'Using env: {env!r}')
    instance = testset.cls(env)

    def not_ran(tests, reason):
        return [TestError(name=n, error=RuntimeError(reason),
                          env_name=env.short_name())
                for n in testset.test_names(tests)]

    _, err, _ = safe_test_function_call(instance, 'setup')
    if err is not None:
        return 0, [err], not_ran(testset.tests, 'testset setup failed')

    executed = 0
    errors = []
    skipped = []
    try:
        for i, test in enumerate(testset.tests):
            executed += 1
            _, err, teardown_err = safe_test_function_call(
                                     instance, test,
                                     teardown_function='test_teardown',
                                     report_name=True)
            errors.extend(e for e in (err, teardown_err) if e is not None)
            remaining = testset.tests[i + 1:]
            if teardown_err is not None:
                # The next test would run next to whatever wasn't removed
                skipped = not_ran(remaining, 'earlier test_teardown failed')
                break
            if errors and stop_after_first_error:
                skipped = not_ran(remaining, 'earlier test failed')
                break
    finally:
        _, err, _ = safe_test_function_call(instance, 'teardown')
        if err is not None:
            errors.append(err)
        report_leftovers(instance)

    return executed, errors, skipped


def report_leftovers(testset_instance):
    leftovers = testset_instance.leftovers()
    if leftovers:
        print(yellow(f'{type(testset_instance).__name__} could not remove: '
                     f'{", ".join(leftovers)}. Delete them manually.'))
    return leftovers


@contextlib.contextmanager
def time_limit(name, seconds):
    """Raises TimeoutError in the body after the given number of seconds"""
    if not seconds:
        yield
        return

    def on_alarm(signum, frame):
        print(f'{name} timed out (timeout: {seconds}s)')
        raise TimeoutError('timed out')

    previous = signal.signal(signal.SIGALRM, on_alarm)
    signal.alarm(seconds)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


def safe_test_function_call(testset, testfunction, args=(),
                            teardown_function=None, report_name=False,
                            dry_run=None, timeout=None):
    """Calls testset.testfunction(*args), then the teardown function if any

    Nothing is raised. Returns (result, error, teardown_error) where the
    errors are TestError or None. The teardown function runs whether the
    call failed or not.
    """
    if timeout is None:
        timeout = config['test_timeout']
    if dry_run is None:
        dry_run = config['dry_run']
    name = test_name(testset, testfunction)
    env = getattr(testset, 'env', None)
    env_name = env.short_name() if env is not None else '(no env)'
    report = start_report(name, report_name)

    def call(function, args):
        if dry_run:
            return None
        with no_output(function), time_limit(name, timeout):
            return getattr(testset, function)(*args)

    res = None
    error = None
    teardown_error = None
    start = time.time()
    try:
        res = call(testfunction, args)
    except Exception as e:
        print_traceback()
        error = TestError(name=name, error=e, env_name=env_name)
    test_time = time.time() - start

    if teardown_function is not None:
        try:
            call(teardown_function, [])
        except Exception as e:
            print_traceback()
            teardown_error = TestError(name=f'{name} (teardown)', error=e,
                                       env_name=env_name)

    report(error, teardown_error, test_time, time.time() - start - test_time)
    return res, error, teardown_error


def print_traceback():
    cscheme = None if config['colors'] else traceback.ColorSchemes.none
    traceback.print_exc(fmt=traceback.Format(color_scheme=cscheme),
                        file_=sys.stdout)


def elapsed_str(seconds):
    if seconds < 0.5:
        return ''
    if seconds > 60:
        return red(f'{round(seconds)}s')
    return f'{seconds:.1f}s'


def red(s):
    return maybe_color(s, 31)


def green(s):
    return maybe_color(s, 32)


def yellow(s):
    return maybe_color(s, 33)


def maybe_color(s, code):
    if config['colors']:
        return f'\033[{code}m{s}\033[0m'
    return s


def start_report(name, verbose):
    """Returns a function printing the outcome of test name

    Verbose reports print one line per test. Silent ones (used for setup
    and teardown) only print failures.
    """
    if verbose and not config['intercept_output']:
        print(f'*** Starting: {name}')

    def report(error, teardown_error, test_time, teardown_time):
        if error is None and teardown_error is None:
            if verbose:
                times = ' '.join(s for s in (elapsed_str(test_time),
                                             elapsed_str(teardown_time))
                                 if s)
                print(f'  {name}... {green("ok")} {times}'.rstrip())
            return
        if verbose:
            verdict = 'teardown failed' if error is None else 'failed'
            print(f'  {name}... {red(verdict)} '
                  f'{elapsed_str(test_time + teardown_time)}'.rstrip())
        for prefix, e in (('', error), ('teardown exception: ', teardown_error)):
            if e is not None:
                print(f'    {red(prefix)}{format_exception(e.error)}')
    return report


def format_exception(e):
    return red(''.join(format_exception_only(type(e), e)).strip('\n'))


@contextlib.contextmanager
def no_output(name, verbose=None):
    """Captures stdout of the body, replaying it only if the body raises"""
    if verbose is None:
        verbose = config['verbose'] or not config['intercept_output']
    if verbose:
        yield
        return

    captured = io.StringIO()
    try:
        with contextlib.redirect_stdout(captured):
            yield
    except Exception:
        output = captured.getvalue()
        if output:
            if not output.endswith('\n'):
                output += '\n'
            print(f'================== {name} output begin =================\n'
                  f'{output}'
                  f'=================== {name} output end ==================')
        raise


def format_error(resp, error):
    if resp is None:
        return f'Error: {error}'
    return f'{resp} Error: {error}'


def assert_eq(got, expected, name='value', resp=None):
    assert expected == got, \
        format_error(resp, f'unexpected {name}: {got}, expected: {expected}')


def assert_in(what, where, resp=None):
    assert what in where, \
        format_error(resp, f'"{what}" is missing in "{where}"')


def assert_startswith(got, prefix, name='value', resp=None):
    assert got.startswith(prefix), \
        format_error(resp, f'unexpected {name}: "{got}", expected to start '
                           f'with: "{prefix}"')


def random_str(n):
    return ''.join(random.choices(string.ascii_lowercase + string.digits,
                                  k=n))


def poll_for_condition(fun, sleep_time, timeout, msg='poll for condition',
                       sleep=time.sleep):
    """Calls fun until it returns something other than False

    Returns that value, or raises TimeoutError after timeout seconds.
    """
    assert sleep_time > 0, 'non-positive sleep_time specified'
    start_time = time.time()
    while True:
        value = fun()
        if value is not False:
            maybe_print(f'{msg}: done in {time.time() - start_time:.2f}s')
            return value
        if time.time() - start_time >= timeout:
            raise TimeoutError(f'{msg}: timed out (timeout: {timeout}s)')
        maybe_print(f'{msg}: sleeping for {sleep_time}s')
        sleep(sleep_time)


def maybe_print(s, verbose=None, print_fun=None):
    if print_fun is None:
        print_fun = print
    if verbose is None:
        verbose = config['verbose']
    if verbose:
        print_fun(s)


class UnmetRequirementsError(Exception):
    def __init__(self, unmet_requirements,
                 message="Test environment doesn't satisfy requirements"):
        unmet_str = ', '.join(str(r) for r in unmet_requirements)
        super().__init__(f'{message}: {unmet_str}')
        self.unmet_requirements = unmet_requirements
