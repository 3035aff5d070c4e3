"""Build pipeline services -- prompt → lane → spec → code → artifact.

Sub-modules:
    router             -- deterministic lane selection
    budget             -- output-budget arithmetic and feature pruning
    refiner            -- prompt → BuildSpec (SECTION: format)
    planner            -- optional implementation plan and file contracts
    codegen            -- LLM call → raw log → FileMap
    fix_loop           -- surgical / full regeneration until validation passes
    review             -- spec-vs-code review (defects, scope gaps)
    constraint_memory  -- lane rules learned from failed builds
    backends           -- branding, sandboxed writes, packaging, smoke test
    orchestrator       -- BuildPipeline wiring every stage together
"""
