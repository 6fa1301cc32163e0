"""SQLite persistence shared by the runtime and the job record store."""
