#!/usr/bin/env python3
#
# @author Couchbase <info@couchbase.com>
# @copyright 2020-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.

import builtins
import getopt
import inspect
import random
import sys
import time
from datetime import datetime

from cmek_tests import testlib
from cmek_tests.testlib import TestError, Testset
from cmek_tests.testlib import test_tag_decorator
from cmek_tests.testlib.env import parse_schedule

from cmek_tests.testsets import \
    cmek_tests

TESTSET_MODULES = [cmek_tests]

USAGE_STRING = """
Usage: {program_name}
    [--project | -p <project_id>]
        Project to create test instances in.
        Default: $BIGTABLE_PROJECT_ID
    [--kms-key-name | -k <key_name>]
        Regional key to protect the clusters with, in the form
        projects/<p>/locations/<region>/keyRings/<r>/cryptoKeys/<k>.
        Default: $BIGTABLE_KMS_KEY_NAME
    [--primary-zone <zone>]
        Zone of the first cluster, must be in the key's region.
        Default: $BIGTABLE_PRIMARY_ZONE or us-central1-b
    [--primary-region-second-zone <zone>]
        Zone of the second cluster, must be in the key's region.
        Default: $BIGTABLE_PRIMARY_REGION_SECOND_ZONE or us-central1-c
    [--secondary-zone <zone>]
        Zone outside of the key's region.
        Default: $BIGTABLE_SECONDARY_ZONE or us-east1-b
    [--wait-for-cmek-key-status | -w]
        Poll until the key status of new tables becomes OK before checking
        it (can take up to ~20 minutes per table).
        Default: $BIGTABLE_WAIT_FOR_CMEK_KEY_STATUS
    [--backoff-schedule <s1>,<s2>,...]
        Seconds to wait between key status reads.
        Default: 5,10,50,100,150,200,250,300
    [--admin-endpoint <url>]
        Default: https://bigtableadmin.googleapis.com
    [--emulator-host <host>:<port>]
        Default: $BIGTABLE_EMULATOR_HOST
    [--instance-prefix <prefix>]
        Prefix of the names of created instances. Default: cmek-it-
    [--tests | -t <test_spec>[, <test_spec> ...]]
        <test_spec> := <testset>[.test_name]
        Run only the specified tests
    [--with-tags <tag>[, <tag> ...]
        Run only tests with at least one of the specified tags
    [--without-tags <tag>[, <tag> ...]
        Run only tests with none of the specified tags
    [--ignore-unknown-tags]
        Drop unrecognised tags instead of failing
    [--dont-intercept-output | -o]
        Display output of successful tests too (by default it is only shown
        when a test fails)
    [--seed | -s <string>]
        Seed for the random suffixes of instance ids
    [--colors 0|1]
        Force colored output on or off
    [--verbose | -v]
        Print requests and other debug information
    [--dry-run]
        Do not actually run tests (useful for framework debugging)
    [--stop-after-error]
        Stop running tests after the first error
    [--dont-report-time]
        Do not prepend output with the current time
    [--test-timeout=N]
        Fail tests running longer than N seconds
    [--help]
        Show this help
"""

LONG_OPTIONS = ["help", "project=", "kms-key-name=", "primary-zone=",
                "primary-region-second-zone=", "secondary-zone=",
                "wait-for-cmek-key-status", "backoff-schedule=",
                "admin-endpoint=", "emulator-host=", "instance-prefix=",
                "tests=", "with-tags=", "without-tags=",
                "ignore-unknown-tags", "dont-intercept-output", "seed=",
                "colors=", "verbose", "dry-run", "stop-after-error",
                "dont-report-time", "test-timeout="]

ENV_OPTIONS = {'--project': 'project_id',
               '-p': 'project_id',
               '--kms-key-name': 'kms_key_name',
               '-k': 'kms_key_name',
               '--primary-zone': 'primary_zone',
               '--primary-region-second-zone': 'primary_region_second_zone',
               '--secondary-zone': 'secondary_zone',
               '--admin-endpoint': 'admin_endpoint',
               '--emulator-host': 'emulator_host',
               '--instance-prefix': 'instance_prefix'}


def usage():
    print(USAGE_STRING.format(program_name=sys.argv[0]))


def bad_args_exit(msg):
    print(testlib.red(msg))
    usage()
    sys.exit(2)


def error_exit(msg):
    print(testlib.red(msg))
    sys.exit(2)


def warning_exit(msg):
    print(testlib.yellow(msg))
    sys.exit(3)


def parse_test_specs(s):
    specs = []
    for spec in s.split(','):
        testset, _, test = spec.strip().partition('.')
        specs.append((testset, test or '*'))
    return specs


def parse_tags(s, ignore_unknown):
    tags = [test_tag_decorator.tag_from_str(t) for t in s.split(',')]
    unknown = [t for t in tags if not isinstance(t, test_tag_decorator.Tag)]
    if unknown and not ignore_unknown:
        bad_args_exit(f"{', '.join(unknown)} is not a valid Tag")
    return [t for t in tags if t not in unknown]


def parse_args(argv):
    """Returns (env_overrides, options), updating testlib.config on the way"""
    try:
        optlist, _ = getopt.gnu_getopt(argv, "hovwp:k:t:s:", LONG_OPTIONS)
    except getopt.GetoptError as err:
        bad_args_exit(str(err))

    env_overrides = {}
    options = {'tests': None,
               'with_tags': None,
               'without_tags': None,
               'seed': testlib.random_str(16),
               'stop_after_first_error': False}
    ignore_unknown_tags = '--ignore-unknown-tags' in (o for o, _ in optlist)

    for o, a in optlist:
        if o in ENV_OPTIONS:
            env_overrides[ENV_OPTIONS[o]] = a
        elif o in ('--wait-for-cmek-key-status', '-w'):
            env_overrides['wait_for_cmek_key_status'] = True
        elif o == '--backoff-schedule':
            try:
                schedule = parse_schedule(a)
            except ValueError:
                bad_args_exit(f"Invalid backoff schedule: {a}")
            if not schedule:
                bad_args_exit("Backoff schedule must not be empty")
            env_overrides['backoff_schedule'] = schedule
        elif o in ('--tests', '-t'):
            options['tests'] = parse_test_specs(a)
        elif o == '--with-tags':
            options['with_tags'] = parse_tags(a, ignore_unknown_tags)
        elif o == '--without-tags':
            options['without_tags'] = parse_tags(a, ignore_unknown_tags)
        elif o == '--ignore-unknown-tags':
            pass
        elif o in ('--dont-intercept-output', '-o'):
            testlib.config['intercept_output'] = False
        elif o in ('--seed', '-s'):
            options['seed'] = a
        elif o == '--colors':
            testlib.config['colors'] = (int(a) == 1)
        elif o in ('--verbose', '-v'):
            testlib.config['verbose'] = True
        elif o == '--dry-run':
            testlib.config['dry_run'] = True
        elif o == '--dont-report-time':
            testlib.config['report_time'] = False
        elif o == '--stop-after-error':
            options['stop_after_first_error'] = True
        elif o == '--test-timeout':
            testlib.config['test_timeout'] = int(a)
        elif o in ('--help', '-h'):
            usage()
            sys.exit(0)
        else:
            assert False, f"unhandled options: {o}"

    return env_overrides, options


def main(argv=None):
    # we use assert statements in tests, so make sure they are not disabled
    if not __debug__:
        raise RuntimeError("Assert statements are disabled")
    env_overrides, options = parse_args(sys.argv[1:] if argv is None
                                        else argv)
    env = testlib.TestEnv.from_environ().with_overrides(**env_overrides)
    random.seed(options['seed'])

    override_print()
    try:
        testsets = discover_testsets()
        testlib.maybe_print("Discovered testsets: "
                            f"{', '.join(t.name for t in testsets)}")
        testsets = find_tests(options['tests'], testsets,
                              options['with_tags'], options['without_tags'])
        if not testsets:
            warning_exit("No tests matched the specified test/tag filters")
        testlib.maybe_print(f"Using env: {env}")
        results = run_testsets(testsets, env,
                               options['stop_after_first_error'])
    finally:
        restore_print()

    executed, errors, not_ran, total_time = results
    print_summary(executed, errors, not_ran, total_time, options['seed'])
    if errors:
        error_exit("Tests finished with errors")
    elif not_ran:
        warning_exit("Some tests were skipped")


def run_testsets(testsets, env, stop_after_first_error):
    """Returns (executed, errors by testset name, not_ran, seconds)"""
    errors = {}
    not_ran = []
    executed = 0
    start = time.monotonic()

    def skip(testset, error):
        not_ran.extend(TestError(name=n, error=error,
                                 env_name=env.short_name())
                       for n in testset.test_names())

    for number, testset in enumerate(testsets, start=1):
        if stop_after_first_error and errors:
            skip(testset, RuntimeError("prior testset failed"))
            continue
        unmet = testset.requirements.get_unmet_requirements(env)
        if unmet:
            skip(testset, testlib.UnmetRequirementsError(unmet))
            continue
        try:
            testset_executed, testset_errors, testset_not_ran = \
                testlib.run_testset(
                    testset, env, number, len(testsets),
                    stop_after_first_error=stop_after_first_error)
        # Errors outside of the tests themselves are reported against the
        # testset, the remaining testsets still run
        except Exception as e:
            testlib.print_traceback()
            testset_executed, testset_not_ran = 0, []
            testset_errors = [TestError(name=f'Testset {testset.name}',
                                        error=e,
                                        env_name=env.short_name())]
        executed += testset_executed
        not_ran += testset_not_ran
        if testset_errors:
            errors.setdefault(testset.name, []).extend(testset_errors)

    return executed, errors, not_ran, time.monotonic() - start


def print_summary(executed, errors, not_ran, total_time, seed):
    error_num = sum(len(e) for e in errors.values())
    colored = testlib.green if error_num == 0 else testlib.red
    minutes, seconds = divmod(total_time, 60)
    print("\n" + "=" * 80 + "\n" +
          colored(f"Tests finished ({executed} executed, {error_num} "
                  f"error{'s' if error_num != 1 else ''})") +
          f"\nTotal time: {int(minutes)}m{seconds:.1f}s" +
          f"\nSeed: {seed}\n")

    for name, testset_errors in errors.items():
        print(f"In {name}:")
        for error in testset_errors:
            print(f"  {error}")
        print()

    if not_ran:
        print("Couldn't run the following tests:")
        for error in not_ran:
            print(f"  {error}")
        print()


def find_tests(test_specs, testsets, with_tags, without_tags):
    if test_specs is not None:
        testsets = select_by_names(test_specs, testsets)
    if with_tags or without_tags:
        testsets = select_by_tags(testsets, with_tags, without_tags)
    return testsets


def select_by_names(test_specs, testsets):
    by_name = {t.name: t for t in testsets}
    selected = {}
    for testset_name, test in test_specs:
        assert testset_name in by_name, \
            f"Testset {testset_name} is not found. " \
            f"Available testsets: {sorted(by_name)}"
        testset = by_name[testset_name]
        if test == '*':
            tests = testset.tests
        else:
            assert test in testset.tests, \
                f"Test {test} is not found in {testset_name}. " \
                f"Available tests: {testset.tests}"
            tests = [test]
        prev = selected.get(testset_name)
        if prev is not None:
            tests = prev.tests + [t for t in tests if t not in prev.tests]
        selected[testset_name] = Testset(testset_name, testset.cls, tests,
                                         testset.requirements)
    return list(selected.values())


def select_by_tags(testsets, with_tags, without_tags):
    selected = []
    for testset in testsets:
        tests = [t for t in testset.tests
                 if test_tag_decorator.matches(getattr(testset.cls, t),
                                               with_tags, without_tags)]
        if tests:
            selected.append(Testset(testset.name, testset.cls, tests,
                                    testset.requirements))
    return selected


def discover_testsets(modules=None):
    """Returns a Testset per BaseTestSet subclass defined in modules"""
    testsets = []
    for module in TESTSET_MODULES if modules is None else modules:
        for name, cls in inspect.getmembers(module, inspect.isclass):
            if cls.__module__ != module.__name__ or \
                    not issubclass(cls, testlib.BaseTestSet) or \
                    inspect.isabstract(cls):
                continue
            tests = sorted(t for t in dir(cls) if t.endswith('_test'))
            if not tests:
                continue
            requirements, err, _ = testlib.safe_test_function_call(
                                     cls, 'requirements', dry_run=False)
            if err is not None:
                error_exit(f"{name} failed to specify requirements: "
                           f"{err.error}")
            if not isinstance(requirements, testlib.EnvRequirements):
                error_exit(f"{name}.requirements() returned "
                           f"{requirements!r} instead of EnvRequirements")
            testsets.append(Testset(name, cls, tests, requirements))
    return testsets


original_print = builtins.print

# Whether the last print ended its line. A print continuing a line started
# with end='' gets no time prefix
last_line_complete = True


def print_with_time(*args, **kwargs):
    global last_line_complete
    show_time = last_line_complete and testlib.config['report_time']
    end = kwargs.get('end')
    last_line_complete = end is None or end.endswith('\n')
    if not args or not show_time:
        original_print(*args, **kwargs)
        return

    first = args[0]
    newlines = ''
    if isinstance(first, str):
        # "\nfoo" is printed as "\n<time> foo" rather than "<time> \nfoo"
        stripped = first.lstrip('\n')
        newlines = first[:len(first) - len(stripped)]
        first = stripped
    original_print(f"{newlines}{datetime.now().strftime('%H:%M:%S')}",
                   first, *args[1:], **kwargs)


def override_print():
    builtins.print = print_with_time


def restore_print():
    builtins.print = original_print


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print('\nExecution interrupted')
        sys.exit(2)
