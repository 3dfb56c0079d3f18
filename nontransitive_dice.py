import sys
import os
import secrets
import hmac
import hashlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Callable, Optional, Sequence

from dotenv import load_dotenv
from tabulate import tabulate

logger = logging.getLogger(__name__)

# ==============================================================================
# 1. Configuration
# ==============================================================================

REQUIRED_FACES = 6
MIN_DICE = 3
KEY_BYTES = 32
FIRST_MOVE_DOMAIN = 2  # 0 = user chooses first, 1 = computer chooses first
USER_FIRST = 0
HMAC_ALGORITHM = hashlib.sha3_256
EXAMPLE_DICE = "2,2,4,4,9,9 1,1,6,6,8,8 3,3,5,5,7,7"

LOG_LEVEL_ENV = "NTD_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def configure_logging():
    """Reads .env / environment and sets up stderr logging."""
    load_dotenv()
    level_name = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

# ==============================================================================
# 2. Error Handling Classes
# ==============================================================================

class ErrorKind(Enum):
    MALFORMED_DIE_SPEC = "malformed_die_spec"
    WRONG_FACE_COUNT = "wrong_face_count"
    INSUFFICIENT_DICE = "insufficient_dice"
    RANDOM_SOURCE_UNAVAILABLE = "random_source_unavailable"
    INVALID_SELECTION = "invalid_selection"
    PROTOCOL_VIOLATION = "protocol_violation"


EXIT_CODES = {
    ErrorKind.MALFORMED_DIE_SPEC: 1,
    ErrorKind.WRONG_FACE_COUNT: 1,
    ErrorKind.INSUFFICIENT_DICE: 1,
    ErrorKind.RANDOM_SOURCE_UNAVAILABLE: 2,
    ErrorKind.PROTOCOL_VIOLATION: 3,
}


class GameError(Exception):
    """Base class for every error the game reports. `kind` drives recovery."""
    kind: ErrorKind

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(GameError):
    """
    Command-line argument validation error.
    Provides a formatted message including an example of correct usage.
    """
    _invocation_command = "python"

    @staticmethod
    def set_invocation_command(command: str):
        """Sets the command used to run the script (e.g., 'python' or 'py')."""
        ValidationError._invocation_command = command

    def __str__(self) -> str:
        script_name = sys.argv[0] if sys.argv else 'nontransitive_dice.py'
        example = f"{ValidationError._invocation_command} {script_name} {EXAMPLE_DICE}"
        return f"\nArgument Error: {self.message}\n\nExample usage:\n{example}\n"


class MalformedDieSpec(ValidationError):
    kind = ErrorKind.MALFORMED_DIE_SPEC


class WrongFaceCount(ValidationError):
    kind = ErrorKind.WRONG_FACE_COUNT


class InsufficientDice(ValidationError):
    kind = ErrorKind.INSUFFICIENT_DICE


class RandomSourceUnavailable(GameError):
    """The secure entropy source failed. Fatal: there is no fair fallback."""
    kind = ErrorKind.RANDOM_SOURCE_UNAVAILABLE


class InvalidSelection(GameError):
    kind = ErrorKind.INVALID_SELECTION


class ProtocolViolation(GameError):
    """Commitment operations were called out of order."""
    kind = ErrorKind.PROTOCOL_VIOLATION

# ==============================================================================
# 3. Data Structure for a Die
# ==============================================================================

class Die:
    __slots__ = ("_faces",)

    def __init__(self, faces: Sequence[int]):
        if not faces:
            raise ValueError("A die must have at least one face.")
        self._faces = tuple(faces)

    @property
    def faces(self) -> tuple[int, ...]:
        return self._faces

    def __str__(self) -> str:
        return ",".join(map(str, self._faces))

    def __repr__(self) -> str:
        return f"Die([{self}])"

    def __len__(self) -> int:
        return len(self._faces)

# ==============================================================================
# 4. Command-Line Argument Parser
# ==============================================================================

class DiceParser:
    @staticmethod
    def parse(args: list[str], required_faces: int = REQUIRED_FACES) -> list[Die]:
        if len(args) < MIN_DICE:
            raise InsufficientDice(
                f"Please specify at least {MIN_DICE} dice (got {len(args)})."
            )
        return [DiceParser.parse_die(arg, required_faces) for arg in args]

    @staticmethod
    def parse_die(arg: str, required_faces: int = REQUIRED_FACES) -> Die:
        faces = []
        for token in arg.split(','):
            try:
                faces.append(int(token))
            except ValueError:
                raise MalformedDieSpec(
                    f"Invalid face value '{token}' in die \"{arg}\". "
                    "All dice faces must be integer values."
                ) from None
        if len(faces) != required_faces:
            raise WrongFaceCount(
                f"Die \"{arg}\" has {len(faces)} faces; "
                f"every die must have exactly {required_faces}."
            )
        return Die(faces)

# ==============================================================================
# 5. Secure Random Source & Fair Die Roller
# ==============================================================================

class SecureRandomSource:
    """
    Handle on the operating system CSPRNG, shared by the commitment engine and
    the die roller. Each read is taken in one piece under a lock.
    """

    def __init__(self, reader: Optional[Callable[[int], bytes]] = None):
        self._reader = reader or secrets.token_bytes
        self._lock = threading.Lock()

    def read(self, size: int) -> bytes:
        with self._lock:
            try:
                data = self._reader(size)
            except (OSError, NotImplementedError) as e:
                raise RandomSourceUnavailable(
                    f"Secure random source is unavailable: {e}"
                ) from e
        if len(data) != size:
            raise RandomSourceUnavailable(
                f"Secure random source returned {len(data)} of {size} requested bytes."
            )
        return data


class FairDieRoller:
    def __init__(self, source: SecureRandomSource):
        self._source = source

    def uniform_int(self, low: int, high: int) -> int:
        """
        Returns an integer uniformly distributed over [low, high).

        Candidates are drawn as the smallest bit string covering the span and
        rejected when they fall outside it, so no value is favoured.
        """
        span = high - low
        if span <= 0:
            raise ValueError(f"Empty range [{low}, {high}).")
        if span == 1:
            return low
        bits = (span - 1).bit_length()
        size = (bits + 7) // 8
        mask = (1 << bits) - 1
        while True:
            candidate = int.from_bytes(self._source.read(size), "big") & mask
            if candidate < span:
                return low + candidate

    def roll_face(self, die: Die) -> int:
        return die.faces[self.uniform_int(0, len(die))]

    def choose(self, items: Sequence):
        if not items:
            raise ValueError("Cannot choose from an empty sequence.")
        return items[self.uniform_int(0, len(items))]

# ==============================================================================
# 6. Cryptographic Commitment Engine
# ==============================================================================

def encode_secret(secret: int) -> bytes:
    """ASCII decimal digits; unambiguous for any non-negative integer."""
    if secret < 0:
        raise ValueError("Committed values must be non-negative.")
    return str(secret).encode("ascii")


def keyed_hash(key: bytes, secret: int) -> bytes:
    return hmac.new(key, encode_secret(secret), HMAC_ALGORITHM).digest()


def verify_commitment(digest: bytes, key: bytes, secret: int) -> bool:
    """Recomputes the HMAC from the revealed values and compares it to `digest`."""
    return hmac.compare_digest(digest, keyed_hash(key, secret))


class CommitmentState(Enum):
    SEALED = "sealed"
    LOCKED = "locked"
    REVEALED = "revealed"


class Commitment:
    """
    Opaque handle returned by `CommitmentEngine.commit`.

    The digest is public. The secret and key stay inside until the engine
    reveals them, which it only does once `lock()` has recorded that the
    human's dependent decision is final.
    """
    __slots__ = ("digest", "_secret", "_key", "_state")

    def __init__(self, secret: int, key: bytes, digest: bytes):
        self.digest = digest
        self._secret = secret
        self._key = key
        self._state = CommitmentState.SEALED

    @property
    def state(self) -> CommitmentState:
        return self._state

    @property
    def value(self) -> int:
        # For the committing side's own decisions; never shown before reveal.
        return self._secret

    def lock(self):
        if self._state is not CommitmentState.SEALED:
            raise ProtocolViolation(f"Cannot lock a commitment that is {self._state.value}.")
        self._state = CommitmentState.LOCKED
        logger.debug("Commitment %s locked", self.digest.hex().upper())

    def __repr__(self) -> str:
        return f"Commitment(digest={self.digest.hex().upper()}, state={self._state.value})"


class CommitmentEngine:
    def __init__(self, source: SecureRandomSource, domain_size: int = FIRST_MOVE_DOMAIN):
        if domain_size < 2:
            raise ValueError("A commitment needs at least two possible values.")
        self._source = source
        self._roller = FairDieRoller(source)
        self.domain_size = domain_size

    def commit(self) -> tuple[bytes, Commitment]:
        secret = self._roller.uniform_int(0, self.domain_size)
        key = self._source.read(KEY_BYTES)
        digest = keyed_hash(key, secret)
        logger.debug(
            "Committed to a value in range 0..%d (HMAC=%s)",
            self.domain_size - 1, digest.hex().upper(),
        )
        return digest, Commitment(secret, key, digest)

    def reveal(self, commitment: Commitment) -> tuple[int, bytes]:
        if commitment.state is CommitmentState.SEALED:
            raise ProtocolViolation(
                "Cannot reveal before the player's choice has been locked in."
            )
        if commitment.state is CommitmentState.REVEALED:
            raise ProtocolViolation("Commitment has already been revealed.")
        commitment._state = CommitmentState.REVEALED
        logger.debug("Commitment revealed (secret=%d)", commitment._secret)
        return commitment._secret, commitment._key

# ==============================================================================
# 7. Probability Calculation Logic
# ==============================================================================

class ProbabilityCalculator:
    @staticmethod
    def count_wins(die1: Die, die2: Die) -> tuple[int, int]:
        wins = sum(1 for f1 in die1.faces for f2 in die2.faces if f1 > f2)
        return wins, len(die1) * len(die2)

    @staticmethod
    def calculate_win_probability(die1: Die, die2: Die) -> Fraction:
        # Ties count in the denominator only.
        wins, total_outcomes = ProbabilityCalculator.count_wins(die1, die2)
        return Fraction(wins, total_outcomes)

    @staticmethod
    def probability_matrix(dice: Sequence[Die]) -> list[list[Optional[Fraction]]]:
        return [
            [
                None if i == j else ProbabilityCalculator.calculate_win_probability(row_die, col_die)
                for j, col_die in enumerate(dice)
            ]
            for i, row_die in enumerate(dice)
        ]

# ==============================================================================
# 8. Help Table Generation
# ==============================================================================

class HelpTableGenerator:
    @staticmethod
    def generate_table(all_dice: Sequence[Die], matrix: list[list[Optional[Fraction]]]) -> str:
        headers = ["User v PC >"] + [f"#{i + 1} [{d}]" for i, d in enumerate(all_dice)]
        table_data = []
        for i, user_die in enumerate(all_dice):
            row = [f"#{i + 1} [{user_die}]"]
            for prob in matrix[i]:
                row.append("-" if prob is None else f"{float(prob):.4f}")
            table_data.append(row)

        intro = (
            "\n--- Win Probability Table ---\n"
            "This table shows the probability of the User's die (rows) winning against the PC's die (columns).\n"
            "Ties count as neither side winning, so opposite cells need not add up to 1.\n"
        )
        return intro + tabulate(table_data, headers=headers, tablefmt="grid")

# ==============================================================================
# 9. Console User Interface
# ==============================================================================

class Command(Enum):
    SELECT = "select"
    HELP = "help"
    EXIT = "exit"


def parse_selection(raw: str, dice_count: int, taken: Optional[int] = None) -> tuple[Command, Optional[int]]:
    """
    Interprets one line typed at the die prompt.

    Returns (Command.SELECT, zero-based index), (Command.HELP, None) or
    (Command.EXIT, None). Raises InvalidSelection for anything else, including
    the die the computer already holds.
    """
    token = raw.strip().upper()
    if token in ("H", "?"):
        return Command.HELP, None
    if token == "X":
        return Command.EXIT, None
    try:
        number = int(token)
    except ValueError:
        raise InvalidSelection(f"'{raw.strip()}' is not a die number, 'H' or 'X'.") from None
    if not 1 <= number <= dice_count:
        raise InvalidSelection(f"Please pick a die between 1 and {dice_count}.")
    if number - 1 == taken:
        raise InvalidSelection(f"Die #{number} is already taken.")
    return Command.SELECT, number - 1


class GameUI:
    def display_message(self, text: str):
        print(text)

    def display_dice(self, dice: Sequence[Die]):
        print(f"Parsed {len(dice)} dice successfully.")
        for i, die in enumerate(dice):
            print(f"  Die #{i + 1} [{die}]")

    def display_hmac(self, digest: bytes):
        print(f"HMAC: {digest.hex().upper()}")

    def display_reveal(self, key: bytes, secret: int):
        print(f"\nHMAC key reveal: {key.hex().upper()}")
        print(f"First-move bit: {secret}")

    def display_menu(self, dice: Sequence[Die], taken: Optional[int] = None):
        print("\nAvailable dice:")
        for i, die in enumerate(dice):
            note = "  (taken)" if i == taken else ""
            print(f" {i + 1} - Die #{i + 1} [{die}]{note}")
        print(" H - Help")
        print(" X - Exit")

    def display_help(self, dice: Sequence[Die], matrix: list[list[Optional[Fraction]]]):
        print("Select a die by entering its number (e.g., 1).")
        print("H - display this help.")
        print("X - quit the game.")
        print(HelpTableGenerator.generate_table(dice, matrix))

    def display_outcome(self, outcome: "RoundOutcome"):
        print(f"You rolled: {outcome.user_roll}")
        print(f"Computer rolled: {outcome.computer_roll}")
        print(outcome.result.value)

    def get_die_choice(self, dice: Sequence[Die], matrix: list[list[Optional[Fraction]]],
                       taken: Optional[int] = None) -> int:
        while True:
            self.display_menu(dice, taken)
            raw = input("Your selection: ")
            try:
                command, index = parse_selection(raw, len(dice), taken)
            except InvalidSelection as e:
                print(f"Invalid input. {e.message} Try again.")
                continue

            if command is Command.EXIT:
                print("Exiting game. Goodbye!")
                sys.exit(0)
            if command is Command.HELP:
                self.display_help(dice, matrix)
                continue
            return index

# ==============================================================================
# 10. Round Outcome
# ==============================================================================

class Result(Enum):
    WIN = "You win!"
    LOSS = "Computer wins."
    TIE = "It's a tie."


@dataclass(frozen=True)
class RoundOutcome:
    user_roll: int
    computer_roll: int
    result: Result

    @classmethod
    def resolve(cls, user_roll: int, computer_roll: int) -> "RoundOutcome":
        if user_roll > computer_roll:
            result = Result.WIN
        elif user_roll < computer_roll:
            result = Result.LOSS
        else:
            result = Result.TIE
        return cls(user_roll, computer_roll, result)

# ==============================================================================
# 11. Main Game Controller
# ==============================================================================

class GameController:
    def __init__(self, dice: list[Die], ui: GameUI, engine: CommitmentEngine, roller: FairDieRoller):
        self.all_dice = dice
        self.ui = ui
        self.engine = engine
        self.roller = roller
        self.probabilities = ProbabilityCalculator.probability_matrix(dice)

    def run(self) -> RoundOutcome:
        self.ui.display_message("--- Welcome to the Non-Transitive Dice Game! ---")
        self.ui.display_dice(self.all_dice)

        digest, commitment = self.engine.commit()
        self.ui.display_message(
            "\nI have decided who chooses a die first (0 = you, 1 = me). Here is my commitment:"
        )
        self.ui.display_hmac(digest)

        user_index, computer_index = self._select_dice(commitment.value == USER_FIRST)
        commitment.lock()

        secret, key = self.engine.reveal(commitment)
        self.ui.display_reveal(key, secret)
        self.ui.display_message("You can check it: HMAC-SHA3-256(key, first-move bit) equals the HMAC above.")

        user_roll = self.roller.roll_face(self.all_dice[user_index])
        computer_roll = self.roller.roll_face(self.all_dice[computer_index])
        logger.debug("Rolled user=%d computer=%d", user_roll, computer_roll)

        outcome = RoundOutcome.resolve(user_roll, computer_roll)
        self.ui.display_message("\n--- Results ---")
        self.ui.display_outcome(outcome)
        return outcome

    def _select_dice(self, user_goes_first: bool) -> tuple[int, int]:
        if user_goes_first:
            self.ui.display_message("\nYour turn to choose a die first.")
            user_index = self.ui.get_die_choice(self.all_dice, self.probabilities)
            computer_index = self._pick_computer_die(exclude=user_index)
        else:
            self.ui.display_message("\nI choose my die first.")
            computer_index = self._pick_computer_die()
            user_index = self.ui.get_die_choice(self.all_dice, self.probabilities, taken=computer_index)
        self.ui.display_message(f"\nYour die: Die #{user_index + 1} [{self.all_dice[user_index]}]")
        return user_index, computer_index

    def _pick_computer_die(self, exclude: Optional[int] = None) -> int:
        available = [i for i in range(len(self.all_dice)) if i != exclude]
        index = self.roller.choose(available)
        logger.debug("Computer picked die #%d", index + 1)
        self.ui.display_message(f"I choose Die #{index + 1} [{self.all_dice[index]}].")
        return index

# ==============================================================================
# 12. Main Execution Block
# ==============================================================================

def main():
    configure_logging()
    try:
        # Dynamically determine the command used to invoke the script
        if 'py.exe' in sys.executable.lower():
            ValidationError.set_invocation_command('py')
        else:
            ValidationError.set_invocation_command('python')

        args = sys.argv[1:]
        dice = DiceParser.parse(args)

        ui = GameUI()
        source = SecureRandomSource()
        engine = CommitmentEngine(source)
        roller = FairDieRoller(source)

        controller = GameController(dice, ui, engine, roller)
        controller.run()

    except GameError as e:
        if e.kind is ErrorKind.RANDOM_SOURCE_UNAVAILABLE:
            logger.critical("Aborting: %s", e.message)
        print(e, file=sys.stderr)
        sys.exit(EXIT_CODES.get(e.kind, 1))
    except (KeyboardInterrupt, EOFError):
        print("\nGame interrupted. Goodbye!")
        sys.exit(0)

if __name__ == "__main__":
    main()
