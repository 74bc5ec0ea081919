"""CLI entry point to ask the Jarvis agent a question about the ward."""

import argparse
import asyncio
import json
import logging
from pathlib import Path

from jarvis.agent.graph import AgentLoop
from jarvis.agent.state import AgentContext, AgentUser
from jarvis.config import settings
from jarvis.memory.cleanup import RetentionWorker
from jarvis.memory.embeddings import EmbeddingService, OllamaEmbedder
from jarvis.memory.episodes import EpisodeStore
from jarvis.memory.repository import InMemoryEpisodeRepository, QdrantEpisodeRepository
from jarvis.memory.retrieval import MemoryRetrieval
from jarvis.memory.vector_store import get_vector_store
from jarvis.patients import PatientStore

DEFAULT_BUNDLE = Path("data/patients/sample_ward.json")


async def build_memory(doctor_id: str) -> tuple[EpisodeStore, MemoryRetrieval, RetentionWorker]:
    if settings.qdrant_url:
        repository = QdrantEpisodeRepository.from_url(settings.qdrant_url)
    else:
        repository = InMemoryEpisodeRepository()
    embeddings = EmbeddingService(OllamaEmbedder(settings), settings=settings)
    vector_store = get_vector_store(settings, await repository.count(doctor_id))
    store = EpisodeStore(repository, embeddings, settings, vector_store=vector_store)
    worker = RetentionWorker(store)
    return store, MemoryRetrieval(store, cleanup=worker), worker


async def run(args: argparse.Namespace) -> None:
    patients = PatientStore()
    patients.load_file(args.bundle)

    current = patients.find_patient(args.patient) if args.patient else None
    if args.patient and current is None:
        print(f"Patient not found: {args.patient}")
        return

    context = AgentContext(
        current_patient=current,
        all_patients=patients.list_patients(),
        current_user=AgentUser(id=args.doctor, name=args.doctor, role="doctor"),
        update_patient=patients.update_patient,
    )

    episodes = memory = worker = None
    if settings.memory_enabled and not args.no_memory:
        episodes, memory, worker = await build_memory(args.doctor)
        worker.start()

    agent = AgentLoop.from_settings(settings, memory=memory, episodes=episodes)
    try:
        response = await agent.run(args.query, context)
        await agent.flush()
    finally:
        if worker is not None:
            await worker.stop()

    print("=" * 60)
    print("Jarvis")
    print("=" * 60)
    print(f"\n{response.answer}\n")
    print(f"Confidence: {response.confidence:.2f}")
    if response.tools_used:
        print(f"Tools used: {', '.join(response.tools_used)}")

    if args.verbose:
        print("-" * 60)
        print("STEPS:")
        for step in response.steps:
            print(f"  [{step.step_number}] {step.thought}")
            if step.observation is not None:
                status = "ok" if step.observation.success else step.observation.error
                print(f"      -> {status}")

    if response.pending_actions:
        print("\n" + "=" * 60)
        print("PENDING ACTIONS (awaiting confirmation)")
        print("=" * 60)
        print(
            json.dumps(
                [a.model_dump() for a in response.pending_actions],
                indent=2,
                ensure_ascii=False,
            )
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Jarvis: hospital ward assistant")
    parser.add_argument("query", help="Question or instruction for the agent")
    parser.add_argument("--patient", help="Current patient (ID or partial name)")
    parser.add_argument("--doctor", default="DOC-001", help="Doctor ID scoping the memory")
    parser.add_argument(
        "--bundle",
        type=Path,
        default=DEFAULT_BUNDLE,
        help="Patient bundle JSON file",
    )
    parser.add_argument("--no-memory", action="store_true", help="Skip episodic memory")
    parser.add_argument("--verbose", action="store_true", help="Show each reasoning step")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
