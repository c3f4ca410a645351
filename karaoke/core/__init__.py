"""Pipeline core: context assembly, chunking, task states, LLM access and orchestration."""
