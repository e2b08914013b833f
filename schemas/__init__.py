from schemas.document import (
    IngestionType,
    DocumentState,
    IngestionRequest,
    Document,
    DocumentResult,
    IngestionReport,
)
from schemas.vector_record import VectorMetadata, VectorRecord, Match
from schemas.query import Query, RelevanceVerdict, QueryResponse
from schemas.settings import (
    PipelineConfig,
    RelevanceConfig,
    TenantConfig,
    RuntimeSettings,
    load_pipeline_config,
    load_tenant_config,
)
