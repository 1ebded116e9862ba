import asyncio
import logging
import signal

from colloquy.services.ai import get_ai_client
from colloquy.workers.consensus import ConsensusTrackingWorker, UserPairWorker
from colloquy.workers.evaluation import EvaluationWorker
from colloquy.workers.extraction import ExtractionWorker
from colloquy.workers.summarization import SummarizationWorker
from colloquy.workers.trace_analysis import TraceAnalysisWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

WORKER_TYPES = (
    ExtractionWorker,
    SummarizationWorker,
    EvaluationWorker,
    ConsensusTrackingWorker,
    UserPairWorker,
    TraceAnalysisWorker,
)


async def run_workers():
    """Run all workers concurrently."""
    ai = get_ai_client()
    workers = [worker_type(ai=ai) for worker_type in WORKER_TYPES]

    # Handle shutdown signals
    def handle_shutdown(sig, frame):  # noqa: ARG001
        logger.info(f"Received shutdown signal: {sig}")
        for worker in workers:
            worker.stop()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    # Run workers concurrently
    await asyncio.gather(*(worker.run() for worker in workers))


def main():
    """Entry point for the worker process."""
    logger.info("Starting Colloquy workers")
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
