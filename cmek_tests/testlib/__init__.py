# @author Couchbase <info@couchbase.com>
# @copyright 2020-Present Couchbase, Inc.
#
# Use of this software is governed by the Business Source License included in
# the file licenses/BSL-Couchbase.txt.  As of the Change Date specified in that
# file, in accordance with the Business Source License, use of this software
# will be governed by the Apache License, Version 2.0, included in the file
# licenses/APL2.txt.
from cmek_tests.testlib.testlib import *
from cmek_tests.testlib.encryption import EncryptionInfo, EncryptionType, \
    Status, StatusCode, UnhandledEncryptionStateError
from cmek_tests.testlib.admin import AdminClient, ApiError, NotFoundError, \
    FailedPreconditionError
from cmek_tests.testlib.convergence import ConvergenceTimeoutError
from cmek_tests.testlib.env import TestEnv
from cmek_tests.testlib.requirements import EnvRequirements
from cmek_tests.testlib.lifecycle import CmekLifecycle
