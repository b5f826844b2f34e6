# Mock Controller - generates controller output for development without hardware
# Vouchers arrive at random intervals; daily reports on a slower timer

import asyncio
import logging
import random
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MACHINES = [29, 30, 31, 32, 33, 34, 35, 36]
CRLF = b'\r\n'
TERMINATOR = b'\x1bP'


class MockController:
    """Produces raw byte chunks in the controller's serial format"""

    def __init__(self, machines: List[int] = None, rng: random.Random = None,
                 voucher_interval: tuple = (30, 90), report_interval: float = 300):
        self.machines = list(machines or MACHINES)
        self.rng = rng or random.Random()
        self.voucher_interval = voucher_interval
        self.report_interval = report_interval
        self.daily_in: Dict[int, Decimal] = {m: Decimal('0.00') for m in self.machines}
        self.daily_paid: Dict[int, Decimal] = {m: Decimal('0.00') for m in self.machines}
        self._task: Optional[asyncio.Task] = None

    def voucher_chunk(self, machine: int = None, amount: Decimal = None,
                      voucher_number: int = None) -> bytes:
        machine = machine or self.rng.choice(self.machines)
        if amount is None:
            amount = Decimal(self.rng.randint(1, 50) * 25) / 100
        voucher_number = voucher_number or self.rng.randint(10000, 99999)
        self.daily_paid[machine] += amount
        self.daily_in[machine] += amount + Decimal(self.rng.randint(0, 40) * 5)

        lines = [
            'MACHINE NUMBER',
            str(machine),
            f'Voucher # {voucher_number}',
            f'${amount:,.2f}',
            f'Confidence Number {self.rng.randint(100000, 999999)}',
            'This voucher is redeemable by this base unit',
        ]
        return CRLF.join(line.encode('ascii') for line in lines) + CRLF + TERMINATOR

    def daily_report_chunks(self) -> List[bytes]:
        """One chunk per report line, totals reset afterwards"""
        lines = ['Daily Books', '-' * 24]
        for machine in self.machines:
            lines.extend([
                f'<{machine}>',
                f'Daily Total Paid == {self.daily_paid[machine]:,.2f}',
                f'Daily In == {self.daily_in[machine]:,.2f}',
            ])
        lines.extend(['Unit Daily Totals', f'Daily In == {sum(self.daily_in.values()):,.2f}'])
        for machine in self.machines:
            self.daily_in[machine] = Decimal('0.00')
            self.daily_paid[machine] = Decimal('0.00')
        return [line.encode('ascii') + CRLF for line in lines]

    async def run(self, submit: Callable[[bytes], Awaitable[None]]):
        loop = asyncio.get_running_loop()
        next_report = loop.time() + self.report_interval
        while True:
            await asyncio.sleep(self.rng.uniform(*self.voucher_interval))
            chunk = self.voucher_chunk()
            logger.info("[MOCK] Voucher out (%d bytes)", len(chunk))
            await submit(chunk)
            if loop.time() >= next_report:
                logger.info("[MOCK] Daily report for %d machines", len(self.machines))
                for chunk in self.daily_report_chunks():
                    await submit(chunk)
                next_report = loop.time() + self.report_interval

    def start(self, submit: Callable[[bytes], Awaitable[None]]):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run(submit), name='mock')
            logger.info("Mock controller started (machines %s)", self.machines)

    async def stop(self):
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
