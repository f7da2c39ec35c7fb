"""
Tabletop — Board-Game Companion Backend
========================================
Catalogs board games, stores rulebook photographs and example images, and
lets players ask an AI assistant about the rules.  Uploaded rulebook pages
are turned into searchable rules text by a vision-capable language model
running in the background; clients poll or subscribe to its progress.

Package layout::

    tabletop/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Domain exception taxonomy → HTTP status
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Games, images, rules, tags, preferences
    ├── engine/
    │   ├── schemas.py     # Pydantic contracts for LLM responses
    │   ├── llm.py         # OpenAI / Anthropic vision clients
    │   ├── bgg.py         # BoardGameGeek XML → dataclasses
    │   ├── prompts.py     # Fixed prompts sent to the models
    │   └── feed.py        # Realtime rule-status feed + PG NOTIFY
    ├── services/
    │   ├── storage_service.py    # Blob storage for image bytes
    │   ├── rules_pipeline.py     # Rule ingestion (queue → background run)
    │   ├── game_service.py       # Game CRUD + create-from-images
    │   ├── image_service.py      # Per-image extraction of uploads
    │   ├── bgg_service.py        # BGG HTTP client, unified search, import
    │   ├── question_service.py   # Ask the assistant
    │   └── preference_service.py # Per-user AI model choice
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Bearer-token auth + DI
        ├── auth.py        # /auth/me
        └── routes/        # Games, rules, BGG, assistant, preferences
"""

__version__ = "0.1.0"
