#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from echonet_mqtt.internal_types import *

from echonet_mqtt import (
    __version__ as pkg_version,
    BridgeConfig,
    DeviceRegistry,
    EchonetBridge,
    EchonetFrame,
    EchonetSocket,
    MqttClient,
    decode_property_map,
    esv_name,
    get_multicast_interfaces,
  )
from echonet_mqtt.constants import PROPERTY_MAP_EPCS

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    async def cmd_run(self) -> int:
        config = BridgeConfig.load(self._args.config)
        if self._args.announce:
            config.announce = True
        registry = DeviceRegistry()
        for device_config in config.devices:
            registry.add_config(device_config)
        if len(registry) == 0:
            logging.warning("No devices configured")
        transport = EchonetSocket(
            registry,
            unicast_bind_address=config.bind_address,
            interface_addresses=config.interfaces,
          )
        pubsub = MqttClient(
            config.broker_host,
            port=config.broker_port,
            username=config.username,
            password=config.password,
            identifier=config.client_id,
          )

        loop = asyncio.get_running_loop()
        shutdown_requested = asyncio.Event()
        def on_signal() -> None:
            logging.debug("Detected SIGINT/SIGTERM, shutting down")
            shutdown_requested.set()
        for signal in (SIGINT, SIGTERM):
            loop.add_signal_handler(signal, on_signal)
        shutdown_wait = asyncio.create_task(shutdown_requested.wait())
        try:
            async with transport, pubsub:
                bridge = EchonetBridge(
                    registry,
                    transport,
                    pubsub,
                    poll_interval=config.poll_interval,
                    flush_interval=config.flush_interval,
                    retain=config.retain,
                    announce=config.announce,
                  )
                async with bridge:
                    assert not bridge.loop_task is None
                    await asyncio.wait([shutdown_wait, bridge.loop_task], return_when=asyncio.FIRST_COMPLETED)
                    if bridge.loop_task.done():
                        # raises if the control loop failed
                        bridge.loop_task.result()
        finally:
            for signal in (SIGINT, SIGTERM):
                loop.remove_signal_handler(signal)
            shutdown_wait.cancel()
            try:
                await shutdown_wait
            except asyncio.CancelledError:
                pass
        logging.info("Bridge stopped")
        return 0

    async def cmd_decode(self) -> int:
        hex_str: str = ''.join(self._args.hex)
        data = bytes.fromhex(hex_str.replace(':', ''))
        frame = EchonetFrame.decode(data)
        summary: JsonableDict = {
            "tid": frame.tid,
            "seoj": f"{frame.seoj:06x}",
            "deoj": f"{frame.deoj:06x}",
            "esv": esv_name(frame.esv),
            "properties": [
                {
                    "epc": f"{prop.epc:02x}",
                    "edt": prop.edt.hex(),
                    **({ "map": [ f"{epc:02x}" for epc in decode_property_map(prop) ] }
                       if prop.epc in PROPERTY_MAP_EPCS else {}),
                } for prop in frame.props
            ],
        }
        print(json.dumps(summary, indent=2))
        return 0

    async def cmd_interfaces(self) -> int:
        results: List[JsonableDict] = [
            { "interface": ifname, "address": ip } for ip, ifname in get_multicast_interfaces()
        ]
        print(json.dumps(results, indent=2))
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the echonet-mqtt command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(description="Bridge ECHONET Lite lights and air conditioners to MQTT.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= run

        parser_run = subparsers.add_parser('run', description="Run the bridge until SIGINT or SIGTERM")
        parser_run.add_argument('config',
                            help='''The JSON configuration file''')
        parser_run.add_argument('--announce', action='store_true', default=False,
                            help='''Multicast an instance list request at startup. Default: as configured''')
        parser_run.set_defaults(func=self.cmd_run)

        # ======================= decode

        parser_decode = subparsers.add_parser('decode', description="Decode a hex-encoded ECHONET Lite frame")
        parser_decode.add_argument('hex', nargs='+',
                            help='''The frame, in hex. May be split into several arguments.''')
        parser_decode.set_defaults(func=self.cmd_decode)

        # ======================= interfaces

        parser_interfaces = subparsers.add_parser('interfaces',
                                description='''List the interfaces on which the multicast group would be joined.''')
        parser_interfaces.set_defaults(func=self.cmd_interfaces)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
                format='%(asctime)s %(levelname)s %(name)s: %(message)s',
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"echonet-mqtt: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"echonet-mqtt: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
