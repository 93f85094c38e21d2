# SPDX-License-Identifier: Apache-2.0
# Copyright 2025 Trevor Baker, all rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Shared test fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any
from unittest.mock import MagicMock

import pytest


@pytest.fixture
def ssm_client() -> MagicMock:
    """Create a mock SSM client that returns no parameters by default."""
    client = MagicMock()
    client.get_parameters.return_value = {"Parameters": [], "InvalidParameters": []}
    return client


@pytest.fixture(autouse=True)
def mock_boto3(mocker: Any, ssm_client: MagicMock) -> MagicMock:
    """Route every boto3 session to the mock SSM client.

    This fixture runs automatically for all tests so no test can reach AWS.
    Tests that need specific session behavior can configure the returned mock.
    """
    boto3 = mocker.patch("parameter_store.boto3")
    boto3.session.Session.return_value.client.return_value = ssm_client
    return boto3


@pytest.fixture
def set_values(ssm_client: MagicMock) -> Callable[[dict[str, str]], None]:
    """Make GetParameters answer from a name -> value mapping."""

    def _set(values: dict[str, str]) -> None:
        def get_parameters(Names: list[str], WithDecryption: bool) -> dict[str, Any]:  # noqa: N803
            return {
                "Parameters": [
                    {"Name": name, "Value": values[name], "Type": "String"}
                    for name in Names
                    if name in values
                ],
                "InvalidParameters": [name for name in Names if name not in values],
            }

        ssm_client.get_parameters.side_effect = get_parameters

    return _set


@pytest.fixture
def set_pages(ssm_client: MagicMock) -> Callable[[str, Iterable[dict[str, Any]]], MagicMock]:
    """Register the pages a paginated operation returns.

    Returns the paginator mock so tests can assert on paginate() calls.
    """
    paginators: dict[str, MagicMock] = {}

    def _set(operation: str, pages: Iterable[dict[str, Any]]) -> MagicMock:
        paginator = MagicMock()
        paginator.paginate.return_value = pages
        paginators[operation] = paginator
        return paginator

    ssm_client.get_paginator.side_effect = lambda operation: paginators[operation]
    return _set
