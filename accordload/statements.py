"""Accord transaction templates and bootstrap schema.

Every statement the workloads run is declared here once. The executor
prepares each template once per worker and binds per-call parameters
positionally, in the order the ``?`` markers appear.

The guarded templates select the guard row's contents so callers can tell
from the returned row whether the conditional branch ran.
"""

from dataclasses import dataclass

KEYSPACE = "accord"

# Result column names produced by ``SELECT row.contents`` and friends
CONTENTS = "row.contents"
CONTENTS_1 = "row1.contents"
CONTENTS_2 = "row2.contents"


@dataclass(frozen=True)
class Statement:
    """A named, parametrized transaction template."""
    name: str
    cql: str


# ---------------------------------------------------------------------------
# cas-register model (checked with Knossos)
# ---------------------------------------------------------------------------

# params: [id]
CAS_READ = Statement("cas-read", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM cas_registers WHERE id = ?);
  SELECT row.contents;
COMMIT TRANSACTION;""")

# params: [id, contents, id]
CAS_UPDATE_IF_EXISTS = Statement("cas-update-if-exists", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM cas_registers WHERE id = ?);
  SELECT row.contents;
  IF row IS NOT NULL THEN
    UPDATE cas_registers SET contents = ? WHERE id = ?;
  END IF
COMMIT TRANSACTION;""")

# params: [id, id, contents]
CAS_INSERT_IF_ABSENT = Statement("cas-insert-if-absent", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM cas_registers WHERE id = ?);
  SELECT row.contents;
  IF row IS NULL THEN
    INSERT INTO cas_registers (id, contents) VALUES (?, ?);
  END IF
COMMIT TRANSACTION;""")

# params: [id, expected, new, id]
CAS_COMPARE_AND_SET = Statement("cas-compare-and-set", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM cas_registers WHERE id = ?);
  SELECT row.contents;
  IF row.contents = ? THEN
    UPDATE cas_registers SET contents = ? WHERE id = ?;
  END IF
COMMIT TRANSACTION;""")

# ---------------------------------------------------------------------------
# rw-register model (checked with Elle)
# ---------------------------------------------------------------------------

# params: [id]
RW_READ = Statement("rw-read", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM rw_registers WHERE id = ?);
  SELECT row.contents;
COMMIT TRANSACTION;""")

# Guarded by the canonical slot (id 0). params: [id, contents]
RW_WRITE = Statement("rw-write", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM rw_registers WHERE id = 0);
  SELECT row.contents;
  IF row IS NULL THEN
    INSERT INTO rw_registers (id, contents) VALUES (?, ?);
  END IF
COMMIT TRANSACTION;""")

# params: [id1, id2]
RW_READ_READ = Statement("rw-read-read", """
BEGIN TRANSACTION
  LET row1 = (SELECT * FROM rw_registers WHERE id = ?);
  LET row2 = (SELECT * FROM rw_registers WHERE id = ?);
  SELECT row1.contents, row2.contents;
COMMIT TRANSACTION;""")

# params: [read id, write id, contents]
RW_READ_WRITE = Statement("rw-read-write", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM rw_registers WHERE id = ?);
  SELECT row.contents;
  INSERT INTO rw_registers (id, contents) VALUES (?, ?);
COMMIT TRANSACTION;""")

# Both writes are guarded by the canonical slot, so a fail result means
# neither applied. The two inserts are conditional here, unlike a plain pair
# of unconditional inserts, which would report fail for writes that landed.
# params: [id1, v1, id2, v2]
RW_WRITE_WRITE = Statement("rw-write-write", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM rw_registers WHERE id = 0);
  SELECT row.contents;
  IF row IS NULL THEN
    INSERT INTO rw_registers (id, contents) VALUES (?, ?);
    INSERT INTO rw_registers (id, contents) VALUES (?, ?);
  END IF
COMMIT TRANSACTION;""")

# ---------------------------------------------------------------------------
# list-append model (checked with Elle)
# ---------------------------------------------------------------------------

# params: [id]
LA_READ = Statement("la-read", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM list_append WHERE id = ?);
  SELECT row.contents;
COMMIT TRANSACTION;""")

# Appends only while the target row is absent. params: [id, element, id]
LA_APPEND = Statement("la-append", """
BEGIN TRANSACTION
  LET row = (SELECT * FROM list_append WHERE id = ?);
  SELECT row.contents;
  IF row IS NULL THEN
    UPDATE list_append SET contents += [?] WHERE id = ?;
  END IF
COMMIT TRANSACTION;""")


SCHEMA = f"""\
CREATE KEYSPACE IF NOT EXISTS {KEYSPACE}
  WITH replication = {{'class': 'SimpleStrategy', 'replication_factor': 3}};

CREATE TABLE IF NOT EXISTS {KEYSPACE}.cas_registers (
  id int PRIMARY KEY,
  contents int
) WITH transactional_mode = 'full';

CREATE TABLE IF NOT EXISTS {KEYSPACE}.rw_registers (
  id int PRIMARY KEY,
  contents bigint
) WITH transactional_mode = 'full';

CREATE TABLE IF NOT EXISTS {KEYSPACE}.list_append (
  id int PRIMARY KEY,
  contents list<int>
) WITH transactional_mode = 'full';
"""
