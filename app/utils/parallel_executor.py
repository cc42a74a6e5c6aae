"""Parallel Executor - bounded thread parallelism with results kept in submission order."""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Optional

TaskResult = tuple[Any, Optional[Exception]]


class ParallelExecutor:
    """Runs independent tasks on a small thread pool."""

    def __init__(self, logger: Any, max_workers: int = 1):
        """
        Initialize parallel executor.

        Args:
            logger: Logger instance
            max_workers: Default worker count (1 runs tasks inline, in order)
        """
        self.logger = logger
        self.max_workers = max(1, int(max_workers))

    def execute_batch(
        self,
        tasks: list[Callable[[], Any]],
        task_names: Optional[list[str]] = None,
        max_workers: Optional[int] = None,
        stop_on_error: bool = False,
    ) -> list[TaskResult]:
        """
        Execute tasks and collect (result, exception) pairs.

        Results are indexed by submission position, never by completion order.

        Args:
            tasks: Zero-argument callables
            task_names: Optional names for logging
            max_workers: Override for the default worker count
            stop_on_error: In inline mode, skip the remaining tasks after a failure

        Returns:
            One (result, exception) tuple per task, in the order tasks were given
        """
        if not tasks:
            return []

        workers = max(1, max_workers or self.max_workers)
        names = [
            task_names[i] if task_names and i < len(task_names) else f"task_{i + 1}" for i in range(len(tasks))
        ]
        results: list[TaskResult] = [(None, None)] * len(tasks)
        start_time = time.time()

        if workers == 1:
            for i, task in enumerate(tasks):
                results[i] = self._run_one(task, names[i], start_time)
                if stop_on_error and results[i][1] is not None:
                    break
            return results

        self.logger.info(f"Parallel execution: {len(tasks)} tasks with max {workers} workers")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index = {executor.submit(task): i for i, task in enumerate(tasks)}
            for done, future in enumerate(as_completed(future_to_index), start=1):
                index = future_to_index[future]
                try:
                    results[index] = (future.result(), None)
                    self.logger.info(f"✅ {names[index]} completed ({done}/{len(tasks)}) in {time.time() - start_time:.2f}s")
                except Exception as e:
                    self.logger.error(f"❌ {names[index]} failed ({done}/{len(tasks)}): {e}")
                    results[index] = (None, e)

        successful = sum(1 for _, error in results if error is None)
        self.logger.info(f"Batch complete: {successful}/{len(tasks)} successful in {time.time() - start_time:.2f}s")
        return results

    def _run_one(self, task: Callable[[], Any], name: str, start_time: float) -> TaskResult:
        try:
            result = task()
        except Exception as e:
            self.logger.error(f"❌ {name} failed after {time.time() - start_time:.2f}s: {e}")
            return None, e
        self.logger.info(f"✅ {name} completed in {time.time() - start_time:.2f}s")
        return result, None


def first_error(results: list[TaskResult]) -> Optional[Exception]:
    """Earliest failure by submission order."""
    for _, error in results:
        if error is not None:
            return error
    return None
