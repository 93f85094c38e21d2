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

"""AWS Systems Manager Parameter Store access for ssm-env.

This module wraps the three Parameter Store read operations the tool needs
(fetch by name, fetch by path, enumerate names) and converts botocore
failures into ResolutionError. Values are never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Final

import boto3
from botocore.exceptions import BotoCoreError, ClientError


# GetParameters accepts at most 10 names per request
MAX_NAMES_PER_REQUEST: Final[int] = 10

logger = logging.getLogger(__name__)


class ResolutionError(RuntimeError):
    """A Parameter Store request failed."""


class MissingParameterError(ResolutionError):
    """Explicitly requested parameters were not returned by the store."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = sorted(names)
        super().__init__(f"Parameters not found: {', '.join(self.names)}")


@dataclass(frozen=True)
class ResolvedParameter:
    """A parameter returned by the store.

    export_name is the environment name used when no rename applies.
    """

    store_key: str
    value: str
    export_name: str

    @classmethod
    def from_response(cls, param: dict[str, Any]) -> ResolvedParameter | None:
        """Build from a Parameter entry of an SSM response.

        Entries without both a name and a value are treated as not found.
        """
        name = param.get("Name")
        value = param.get("Value")
        if not name or value is None:
            return None

        store_key = f"{name}{param.get('Selector') or ''}"
        return cls(store_key=store_key, value=value, export_name=store_key)


class ParameterStore:
    """Read-only client for AWS Systems Manager Parameter Store."""

    def __init__(self, client: Any) -> None:
        """Initialize the store.

        Args:
            client: A boto3 SSM client.
        """
        self.client = client

    @classmethod
    def from_session(cls, region: str | None = None, profile: str | None = None) -> ParameterStore:
        """Create a store using boto3's credential and region discovery.

        Args:
            region: Region override (defaults to the session's region).
            profile: Named AWS profile (defaults to the default chain).

        Raises:
            ResolutionError: If the session or client cannot be created.
        """
        try:
            session = boto3.session.Session(profile_name=profile, region_name=region)
            return cls(session.client("ssm"))
        except (BotoCoreError, ClientError) as e:
            error_msg = f"Failed to create SSM client: {e}"
            logger.debug(error_msg, exc_info=True)
            raise ResolutionError(error_msg) from e

    def get_parameters(
        self, names: Iterable[str], with_decryption: bool = True
    ) -> Iterator[ResolvedParameter]:
        """Fetch parameters by name.

        Names are deduplicated and requested in batches. Names the store
        does not return are logged and skipped rather than raised.

        Args:
            names: Parameter names, optionally with a ``:version`` or
                ``:label`` selector.
            with_decryption: Decrypt SecureString values.

        Yields:
            Each parameter returned with both a name and a value.

        Raises:
            ResolutionError: If a GetParameters request fails.
        """
        unique = list(dict.fromkeys(names))
        for start in range(0, len(unique), MAX_NAMES_PER_REQUEST):
            batch = unique[start : start + MAX_NAMES_PER_REQUEST]
            logger.debug(f"Fetching {len(batch)} parameter(s) by name")

            response = self._call(
                "GetParameters",
                self.client.get_parameters,
                Names=batch,
                WithDecryption=with_decryption,
            )

            found: set[str] = set()
            for entry in response.get("Parameters", []):
                param = ResolvedParameter.from_response(entry)
                if param is None:
                    continue
                found.add(param.store_key)
                yield param

            for name in batch:
                if name not in found:
                    logger.debug(f"Parameter not returned: {name}")

    def get_parameters_by_path(
        self, path: str, with_decryption: bool = True, recursive: bool = False
    ) -> Iterator[ResolvedParameter]:
        """Fetch every parameter under a path, following pagination.

        Args:
            path: Path prefix as given by the caller.
            with_decryption: Decrypt SecureString values.
            recursive: Include all descendants instead of one level.

        Raises:
            ResolutionError: If a GetParametersByPath request fails.
        """
        logger.debug(f"Fetching parameters under path: {path}")
        pages = self._paginate(
            "get_parameters_by_path",
            Path=path,
            Recursive=recursive,
            WithDecryption=with_decryption,
        )
        for page in pages:
            for entry in page.get("Parameters", []):
                param = ResolvedParameter.from_response(entry)
                if param is not None:
                    yield param

    def describe_parameter_names(self) -> list[str]:
        """Enumerate every parameter name visible to the caller.

        Raises:
            ResolutionError: If enumeration fails, e.g. the caller lacks
                ssm:DescribeParameters.
        """
        logger.debug("Enumerating all parameter names")
        names = [
            entry["Name"]
            for page in self._paginate("describe_parameters")
            for entry in page.get("Parameters", [])
            if entry.get("Name")
        ]
        logger.debug(f"Enumerated {len(names)} parameter name(s)")
        return names

    def _paginate(self, operation: str, **kwargs: Any) -> Iterator[dict[str, Any]]:
        """Iterate over all pages of a paginated operation."""
        try:
            paginator = self.client.get_paginator(operation)
            yield from paginator.paginate(**kwargs)
        except (BotoCoreError, ClientError) as e:
            error_msg = f"Failed to call {operation}: {e}"
            logger.debug(error_msg, exc_info=True)
            raise ResolutionError(error_msg) from e

    @staticmethod
    def _call(operation: str, method: Any, **kwargs: Any) -> dict[str, Any]:
        """Call a client method, wrapping botocore errors."""
        try:
            response: dict[str, Any] = method(**kwargs)
        except (BotoCoreError, ClientError) as e:
            error_msg = f"Failed to call {operation}: {e}"
            logger.debug(error_msg, exc_info=True)
            raise ResolutionError(error_msg) from e
        return response
