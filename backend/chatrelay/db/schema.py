"""SQL schema shared by startup initialization and create_database.py."""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS User (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    customSystemPrompt TEXT
);

CREATE TABLE IF NOT EXISTS ModelConfig (
    id TEXT PRIMARY KEY,
    displayName TEXT NOT NULL,
    modelIdentifier TEXT NOT NULL UNIQUE,
    providerKind TEXT DEFAULT 'local-completion' NOT NULL,
    baseUrl TEXT DEFAULT 'http://localhost:11434' NOT NULL,
    encryptedApiKey TEXT,
    contextWindowTokens INTEGER DEFAULT 4096 NOT NULL,
    isActive INTEGER DEFAULT 1 NOT NULL
);

CREATE TABLE IF NOT EXISTS ChatSession (
    sessionId TEXT PRIMARY KEY,
    userId TEXT,
    title TEXT,
    model TEXT,
    createdAt TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chatsession_userId ON ChatSession(userId);

CREATE TABLE IF NOT EXISTS ChatTurn (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sessionId TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    attachmentsJson TEXT,
    imagesJson TEXT,
    toolCallsJson TEXT,
    toolCallId TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (sessionId) REFERENCES ChatSession(sessionId) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chatturn_sessionId ON ChatTurn(sessionId);
"""


def schema_statements() -> list[str]:
    """Split the schema into single statements for drivers without executescript."""
    return [stmt.strip() for stmt in SCHEMA_SQL.split(";") if stmt.strip()]
