#!/usr/bin/env python3
"""Helpers shared by the Confluent cookbooks and their libraries."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from itertools import chain
from typing import Any, Dict, List, Optional, Union
from unittest import mock

from ClusterShell.MsgTree import MsgTreeElem
from cumin.transports import Command
from spicerack import Spicerack
from spicerack.remote import Remote, RemoteHosts

LOGGER = logging.getLogger(__name__)


class ConfluentError(Exception):
    """Parent exception for all the Confluent related issues."""


class ArgparsableEnum(Enum):
    """Enum that behaves well with argparse.

    Example usage:

    class MyEnum(ArgparsableEnum):
        OPT1 = "option 1"
        OPT2 = "option 2"

    parser.add_argument(
        "--my-enum",
        choices=list(MyEnum),
        type=MyEnum,
        default=MyEnum.OPT1,
    )
    """

    def __str__(self):
        """Needed to show the nice string values and for argparse to use those to call the `type` parameter."""
        return self.value


def run_one_raw(
    command: Union[List[str], Command],
    node: RemoteHosts,
    capture_errors: bool = False,
    **kwargs,
) -> str:
    """Run a command on a single node.

    Returns the raw output, or an empty string if the command produced none.
    Any extra kwargs will be passed to the RemoteHosts.run_sync function.
    """
    if not isinstance(command, Command):
        command = Command(command=" ".join(command), ok_codes=[0, 1, 2, 3] if capture_errors else [0])

    try:
        result = next(node.run_sync(command, **kwargs))

    except StopIteration:
        return ""

    return result[1].message().decode()


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class TestUtils:
    """Generic testing utilities."""

    # not a test class, even if imported in a test module
    __test__ = False

    @staticmethod
    def to_parametrize(test_cases: Dict[str, Dict[str, Any]]) -> Dict[str, Union[str, List[Any]]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**TestUtils.to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        # keep the first-seen order so argnames and argvalues always line up
        _param_names = list(dict.fromkeys(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(must_param, None) for must_param in _param_names]

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_remote(
        responses: Optional[List[str]] = None, side_effect: Optional[List[Any]] = None
    ) -> mock.MagicMock:
        """Create a fake remote.

        It will return a RemoteHosts that will return the given responses when run_sync is called in them.
        If side_effect is passed, it will override the responses and set that as side_effect of the mock on run_sync.
        """
        responses = responses if responses is not None else []
        fake_hosts = mock.create_autospec(spec=RemoteHosts, spec_set=True)
        fake_remote = mock.create_autospec(spec=Remote, spec_set=True)

        fake_remote.query.return_value = fake_hosts

        if side_effect is not None:
            fake_hosts.run_sync.side_effect = side_effect
        else:
            # the return type of run_sync is Iterator[Tuple[NodeSet, MsgTreeElem]], one per call
            fake_hosts.run_sync.side_effect = [
                iter([(None, TestUtils.get_fake_msg_tree(msg_tree_response=response))]) for response in responses
            ]

        return fake_remote

    @staticmethod
    def get_fake_msg_tree(msg_tree_response: str) -> mock.MagicMock:
        """Create a fake ClusterShell message as returned by RemoteHosts.run_sync."""
        fake_msg_tree = mock.create_autospec(spec=MsgTreeElem, spec_set=True)
        fake_msg_tree.message.return_value = msg_tree_response.encode()
        return fake_msg_tree

    @staticmethod
    def get_fake_spicerack(fake_remote: mock.MagicMock, dry_run: bool = False) -> mock.MagicMock:
        """Create a fake spicerack."""
        fake_spicerack = mock.create_autospec(spec=Spicerack, instance=True)
        fake_spicerack.remote.return_value = fake_remote
        fake_spicerack.dry_run = dry_run
        return fake_spicerack
