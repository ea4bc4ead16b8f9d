"""Best-effort mirroring of an instance's serial console to Cloud Storage.

One stream runs per created instance. Every interval it fetches the console
output past the last offset, appends it to a buffer that is never reset and
overwrites the log object with the whole buffer. The stream ends quietly
when the workflow is cancelled, when the instance was deleted by the
workflow or when the instance stopped; any other poll failure is logged once
and ends the stream. Console capture is diagnostic, so nothing here ever
raises to the caller.
"""

from __future__ import annotations

import asyncio
import posixpath
from typing import TYPE_CHECKING

from google.api_core.exceptions import ServerError
from loguru import logger

if TYPE_CHECKING:
    from cirrus.workflow.workflow import Workflow

log = logger.bind(component="serial")

SERIAL_PORT = 1


def serial_log_path(wf: Workflow, instance: str, port: int = SERIAL_PORT) -> str:
    return posixpath.join(wf.logs_path, f"{instance}-serial-port{port}.log")


async def _wait_tick(cancel: asyncio.Event, interval: float) -> bool:
    """Sleep one interval; False if cancellation was signalled meanwhile."""
    try:
        async with asyncio.timeout(interval):
            await cancel.wait()
    except TimeoutError:
        return True
    return False


async def stream_serial_output(
    wf: Workflow,
    *,
    name: str,
    instance: str,
    project: str,
    zone: str,
    port: int = SERIAL_PORT,
    interval: float | None = None,
) -> None:
    """Mirror serial ``port`` of ``instance`` until it goes away.

    ``name`` is the logical name the instance is registered under; its
    absence from the instance registry means the workflow deleted it.
    """
    interval = interval if interval is not None else wf.serial_interval
    obj = serial_log_path(wf, instance, port)
    log.info(
        "Streaming instance {instance} serial port {port} output to gs://{bucket}/{obj}",
        instance=instance, port=port, bucket=wf.bucket, obj=obj,
    )

    start = 0
    buf = bytearray()
    server_errors = 0
    while await _wait_tick(wf.cancel, interval):
        try:
            resp = await wf.compute.get_serial_port_output(project, zone, instance, port, start)
        except Exception as e:
            if wf.registries.instances.get(name) is None:
                return
            try:
                stopped = await wf.compute.instance_stopped(project, zone, instance)
            except Exception:
                stopped = False
            if stopped:
                return
            log.warning(
                "Instance {instance}: error getting serial port: {err}",
                instance=instance, err=e,
            )
            return

        start = resp.next
        buf.extend(resp.contents.encode())
        try:
            await wf.storage.write_object(wf.bucket, obj, bytes(buf), content_type="text/plain")
        except ServerError as e:
            server_errors += 1
            log.debug(
                "Instance {instance}: transient error saving serial log ({n} in a row): {err}",
                instance=instance, n=server_errors, err=e,
            )
            continue
        except Exception as e:
            log.warning(
                "Instance {instance}: error saving serial log: {err}",
                instance=instance, err=e,
            )
            return
        server_errors = 0
