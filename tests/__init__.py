# SPDX-License-Identifier: Apache-2.0
"""
unimodel_sdk tests

Unit and behavior tests for the unified model execution pipeline: streaming
assembly, execution policy, encryption envelope, options, transport and the
provider adapters.
"""
