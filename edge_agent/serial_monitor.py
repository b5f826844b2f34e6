# Serial Monitor - reads the controller serial port and echoes to the printer
# Raw bytes go to the printer before anything else sees them

import asyncio
import logging
import queue
import threading
from typing import Awaitable, Callable, Optional

import serial

logger = logging.getLogger(__name__)

READ_SIZE = 4096
PRINTER_QUEUE_SIZE = 1024

# pyserial raises plain OSError from ioctl/read when an adapter is unplugged
SERIAL_ERRORS = (serial.SerialException, OSError)


class PrinterPassthrough:
    """Writes raw chunks to the printer port from one writer thread, in arrival order"""

    def __init__(self, port: str, baudrate: int = 9600):
        self.port = port
        self.baudrate = baudrate
        self.connected = False
        self.dropped_chunks = 0
        self._serial: Optional[serial.Serial] = None
        self._queue: queue.Queue = queue.Queue(maxsize=PRINTER_QUEUE_SIZE)
        self._writer: Optional[threading.Thread] = None

    def open(self):
        try:
            self._serial = serial.Serial(self.port, self.baudrate, bytesize=serial.EIGHTBITS,
                                         parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE,
                                         timeout=1, write_timeout=1)
        except SERIAL_ERRORS as e:
            logger.warning("Failed to open printer port %s, continuing without pass-through: %s",
                           self.port, e)
            self._serial = None
            return
        self.connected = True
        self._writer = threading.Thread(target=self._write_loop, name='printer_passthrough',
                                        daemon=True)
        self._writer.start()
        logger.info("Printer port %s opened", self.port)

    def __call__(self, data: bytes):
        """Framer pass-through sink; returns immediately"""
        if self._writer is None or not self.connected:
            return
        try:
            self._queue.put_nowait(data)
        except queue.Full:
            self.dropped_chunks += 1
            logger.warning("Printer queue full, dropped %d bytes", len(data))

    def _write_loop(self):
        while True:
            data = self._queue.get()
            if data is None:
                break
            if not self.connected:
                continue
            try:
                self._serial.write(data)
            except SERIAL_ERRORS as e:
                logger.error("Error writing to printer: %s", e)
                self.connected = False

    def close(self):
        """Drain queued chunks, then release the port"""
        if self._writer is not None:
            self._queue.put(None)
            self._writer.join(timeout=5)
            self._writer = None
        if self._serial is not None:
            self._serial.close()
            self._serial = None
        self.connected = False


class SerialMonitor:
    """Reads raw chunks from the controller with disconnect/reconnect"""

    def __init__(self, port: str, on_data: Callable[[bytes], Awaitable[None]],
                 baudrate: int = 9600,
                 on_connected: Optional[Callable[[], None]] = None,
                 on_disconnected: Optional[Callable[[], None]] = None):
        self.port = port
        self.baudrate = baudrate
        self.on_data = on_data
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.is_connected = False
        self.bytes_received = 0
        self._reconnect_delay = 5
        self._reconnect_max_delay = 60
        self._task: Optional[asyncio.Task] = None

    async def _open(self) -> serial.Serial:
        return await asyncio.to_thread(
            serial.Serial, self.port, self.baudrate, bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE, timeout=1)

    async def _read_loop(self, ser: serial.Serial):
        while True:
            data = await asyncio.to_thread(ser.read, max(1, min(ser.in_waiting, READ_SIZE)))
            if data:
                self.bytes_received += len(data)
                await self.on_data(data)

    def _set_connected(self, connected: bool):
        self.is_connected = connected
        callback = self.on_connected if connected else self.on_disconnected
        if callback:
            callback()

    async def run(self):
        """Serial port listener with disconnect/reconnect"""
        delay = self._reconnect_delay
        while True:
            ser = None
            try:
                ser = await self._open()
                delay = self._reconnect_delay
                logger.info("Serial port %s opened", self.port)
                self._set_connected(True)
                await self._read_loop(ser)
            except SERIAL_ERRORS as e:
                logger.warning("Serial port %s unavailable: %s", self.port, e)
            finally:
                if ser is not None:
                    try:
                        ser.close()
                    except SERIAL_ERRORS as e:
                        logger.debug("Closing serial %s failed: %s", self.port, e)
                if self.is_connected:
                    self._set_connected(False)

            logger.info("Reconnecting to serial %s in %s seconds...", self.port, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max_delay)

    def start(self):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run(), name='serial_monitor')
            logger.info("Serial interception started on %s", self.port)

    async def stop(self):
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Serial monitor stopped")

    def get_status(self) -> dict:
        return {
            'connected': self.is_connected,
            'port': self.port,
            'bytes_received': self.bytes_received,
        }
